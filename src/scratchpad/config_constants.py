"""
Filename and directory constants for scratchpad.

This is the single source of truth for every configuration filename and for
the per-scratch directory layout. Modules import from here instead of using
hardcoded strings.

Naming convention:
- *.defaults.toml.j2 = Template defaults (committed)
- *.toml.j2 = Template overrides (gitignored)
- *.toml = Plain runtime config (used when no template exists)
"""

# ============================================================================
# Controller configuration (base directory)
# ============================================================================

CONFIG_DEFAULTS = 'scratchpad.defaults.toml.j2'
CONFIG_OVERRIDES = 'scratchpad.toml.j2'
CONFIG_PLAIN = 'scratchpad.toml'

# ============================================================================
# Template directory layout
# ============================================================================

TEMPLATE_ENV_DIR = 'env.d'
TEMPLATE_SERVICES_DIR = 'services.d'
TEMPLATE_INIT_DIR = 'initialise.d'
TEMPLATE_UP_DIR = 'up.d'
DESCRIPTOR_TEMPLATE = 'docker-compose.yml.j2'

# ============================================================================
# Per-scratch directory layout (<releases_dir>/<identity>/...)
# ============================================================================

DESCRIPTOR_FILE = 'docker-compose.yml'
METADATA_FILE = '.scratchpad.toml'
ENV_DIR = 'env.d'
LOGS_DIR = 'logs'
SOCKETS_DIR = 'sockets'
STORAGE_DIR = 'storage'

SCRATCH_SUBDIRS = (ENV_DIR, LOGS_DIR, SOCKETS_DIR, STORAGE_DIR)

SOCKET_SUFFIX = '.sock'

# Auxiliary services appended to every descriptor
LOGS_SERVICE = 'logs'
SOCKETS_SERVICE = 'sockets'
AUXILIARY_SERVICES = (LOGS_SERVICE, SOCKETS_SERVICE)

# Shared services live next to the releases directory
SHARED_PROJECT_SUFFIX = 'shared'

# Timestamp format used for per-operation log files
LOG_TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'


def socket_filename(service_name: str) -> str:
    """
    Get the socket filename for a bridged service endpoint.

    Examples:
        >>> socket_filename('api')
        'api.sock'
    """
    return f"{service_name}{SOCKET_SUFFIX}"
