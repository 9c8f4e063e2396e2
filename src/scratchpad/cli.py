#!/usr/bin/env python3
"""
scratchpad command line.

Every subcommand loads the controller configuration from --config-dir
(default: $SCRATCHPAD_CONFIG_DIR, then the current directory), runs one
operation and prints its result. Errors map to stable exit codes.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .config import configure_logging, load_settings
from .errors import (
    Busy,
    ConfigError,
    Degraded,
    InvalidIdentity,
    InvalidPath,
    NotFound,
    ScratchError,
    ScriptFailure,
)
from .lifecycle import LifecycleController, LifecycleResult
from .routing import resolve_dispatch, write_ingress_config

EXIT_CODES = (
    (InvalidIdentity, 2),
    (InvalidPath, 2),
    (ConfigError, 2),
    (NotFound, 3),
    (Busy, 4),
    (Degraded, 5),
    (ScriptFailure, 6),
)

IDENTITY_COMMANDS = {
    'start': 'start',
    'stop': 'stop',
    'restart': 'restart',
    'update': 'update',
    'rebuild': 'rebuild',
    'wipe-db': 'wipe_database',
    'delete': 'delete',
}


def exit_code_for(error: ScratchError) -> int:
    for error_type, code in EXIT_CODES:
        if isinstance(error, error_type):
            return code
    return 1


def parse_arguments(argv: Optional[list] = None) -> argparse.Namespace:
    """
    Parse command-line arguments for scratchpad.
    """
    parser = argparse.ArgumentParser(
        prog='scratchpad',
        description='Scratchpad: per-branch scratch environments behind one dynamic ingress',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Create (or update) the scratch for a branch
  %(prog)s create feature/login

  # Create with an alias and a service profile
  %(prog)s create feature/login --name login --profile minimal

  # Reset one env file to its template
  %(prog)s env-reset login api.env

  # Write the static ingress rule once
  %(prog)s ingress
        '''
    )

    parser.add_argument(
        '-c', '--config-dir',
        type=Path,
        default=None,
        metavar='PATH',
        help='Controller configuration directory (default: $SCRATCHPAD_CONFIG_DIR or cwd)'
    )
    parser.add_argument(
        '--log-level',
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Console log level (default: from configuration)'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Print results as JSON'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    commands = parser.add_subparsers(dest='command', required=True, metavar='COMMAND')

    create = commands.add_parser('create', help='Create a scratch for a branch (update if it exists)')
    create.add_argument('branch', help='Branch name')
    create.add_argument('-n', '--name', default=None, help='Alias used instead of the branch for the identity')
    create.add_argument('-p', '--profile', default=None, help='Service profile')

    for command, operation in IDENTITY_COMMANDS.items():
        sub = commands.add_parser(command, help=f'{operation.replace("_", " ").capitalize()} a scratch')
        sub.add_argument('identity')

    commands.add_parser('list', help='List scratches')

    status = commands.add_parser('status', help='Show one scratch with its containers')
    status.add_argument('identity')

    env = commands.add_parser('env', help='Show env files of a scratch')
    env.add_argument('identity')
    env.add_argument('--structured', action='store_true', help='Parse KEY=VALUE entries')

    env_write = commands.add_parser('env-write', help='Write an env file and redeploy its services')
    env_write.add_argument('identity')
    env_write.add_argument('name', help='Env file name (bare names land in env.d/)')
    env_write.add_argument('source', nargs='?', default='-', help="File to read content from ('-' = stdin)")

    env_reset = commands.add_parser('env-reset', help='Reset env files to their templates')
    env_reset.add_argument('identity')
    env_reset.add_argument('names', nargs='*', help='Env files to reset (default: all)')

    logs = commands.add_parser('logs', help='Show container logs of a scratch')
    logs.add_argument('identity')
    logs.add_argument('-s', '--service', default=None)
    logs.add_argument('--tail', type=int, default=100)

    commands.add_parser('ingress', help='Write the static ingress rule and fallback page')

    route = commands.add_parser('route', help='Show where the ingress sends a request')
    route.add_argument('host')
    route.add_argument('path', nargs='?', default='/')

    shared = commands.add_parser('shared', help='Manage shared services')
    shared.add_argument('action', choices=['start', 'stop', 'restart', 'status'])

    serve = commands.add_parser('serve', help='Run the control API')
    serve.add_argument('--host', default='0.0.0.0')
    serve.add_argument('--port', type=int, default=3456)

    return parser.parse_args(argv)


def _print(args: argparse.Namespace, payload, text: Optional[str] = None) -> None:
    if args.json or text is None:
        print(json.dumps(payload, indent=2, default=str), flush=True)
    else:
        print(text, flush=True)


def _print_result(args: argparse.Namespace, result: LifecycleResult) -> int:
    summary = result.to_summary()
    lines = [f"[INFO] {summary['identity']}: {summary['operation']} -> {summary['state']}"]
    if summary['changed_services']:
        lines.append(f"[INFO]   services: {', '.join(summary['changed_services'])}")
    for warning in summary['warnings']:
        lines.append(f"[WARN]   {warning}")
    for failure in summary['failures']:
        lines.append(f"[ERROR]  {failure}")
    if summary['log_file']:
        lines.append(f"[INFO]   log: {summary['log_file']}")
    _print(args, summary, "\n".join(lines))
    result.raise_for_degraded()
    return 0


def run_command(args: argparse.Namespace, controller: LifecycleController) -> int:
    command = args.command
    settings = controller.settings

    if command == 'create':
        return _print_result(args, controller.create(args.branch, name=args.name, profile=args.profile))

    if command in IDENTITY_COMMANDS:
        return _print_result(args, getattr(controller, IDENTITY_COMMANDS[command])(args.identity))

    if command == 'list':
        scratches = [entry.to_summary() for entry in controller.list()]
        text = "\n".join(
            f"{s['identity']:<30} {s['state'] or 'busy':<14} {s['branch'] or s['operation'] + ' in progress'}"
            for s in scratches
        ) or "[INFO] No scratches"
        _print(args, scratches, text)
        return 0

    if command == 'status':
        _print(args, controller.status(args.identity).to_summary())
        return 0

    if command == 'env':
        files = controller.read_env(args.identity, structured=args.structured)
        if args.structured:
            _print(args, files)
        else:
            _print(args, files, "\n".join(f"# {name}\n{content}" for name, content in files.items()))
        return 0

    if command == 'env-write':
        content = sys.stdin.read() if args.source == '-' else Path(args.source).read_text(encoding='utf-8')
        return _print_result(args, controller.write_env(args.identity, {args.name: content}))

    if command == 'env-reset':
        return _print_result(args, controller.reset_env(args.identity, args.names or None))

    if command == 'logs':
        output = controller.logs(args.identity, args.service, args.tail)
        _print(args, {"identity": args.identity, "logs": output}, output)
        return 0

    if command == 'ingress':
        written = write_ingress_config(settings)
        _print(args, [str(path) for path in written], "\n".join(f"[INFO] Wrote {path}" for path in written))
        return 0

    if command == 'route':
        dispatch = resolve_dispatch(args.host, args.path, settings.server.releases_dir, settings)
        _print(args, dispatch.__dict__)
        return 0

    if command == 'shared':
        if args.action == 'start':
            failures = controller.shared.ensure_running()
        elif args.action == 'restart':
            failures = controller.shared.restart()
        elif args.action == 'stop':
            controller.shared.stop()
            failures = {}
        else:
            states = controller.shared.status() or []
            _print(args, [{"service": s.name, "state": s.state, "health": s.health or None} for s in states])
            return 0
        _print(args, {"action": args.action, "failures": failures})
        return 5 if failures else 0

    if command == 'serve':
        import uvicorn
        from .api import create_app

        uvicorn.run(create_app(controller), host=args.host, port=args.port, log_config=None)
        return 0

    raise ValueError(f"Unhandled command: {command}")


def main(argv: Optional[list] = None) -> int:
    args = parse_arguments(argv)
    try:
        settings = load_settings(args.config_dir)
    except ScratchError as e:
        configure_logging(args.log_level or "INFO")
        print(f"[ERROR] {e}", file=sys.stderr, flush=True)
        return exit_code_for(e)

    configure_logging(args.log_level or settings.server.log_level)
    controller = LifecycleController(settings)
    try:
        return run_command(args, controller)
    except ScratchError as e:
        print(f"[ERROR] {e}", file=sys.stderr, flush=True)
        return exit_code_for(e)
    finally:
        controller.shutdown()


if __name__ == '__main__':
    raise SystemExit(main())
