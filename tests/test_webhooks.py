"""
Webhook intake tests.
"""

from pathlib import Path
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from scratchpad.errors import InvalidIdentity  # noqa: E402
from scratchpad.webhooks import branch_from_payload, handle_branch_ref, submit_payload  # noqa: E402


class TestBranchFromPayload:
    def test_push(self):
        assert branch_from_payload({"ref": "refs/heads/feature/login"}) == "feature/login"

    def test_pull_request(self):
        payload = {"action": "opened", "pull_request": {"head": {"ref": "fix/crash"}}}

        assert branch_from_payload(payload) == "fix/crash"

    def test_no_branch(self):
        assert branch_from_payload({"zen": "Keep it simple"}) is None


class TestSubmitPayload:
    def test_push_creates(self):
        controller = MagicMock()

        identity, operation, future = submit_payload(controller, {"ref": "refs/heads/Feature/Login"})

        assert (identity, operation) == ("featurelogin", "create")
        controller.submit.assert_called_once_with("create", "Feature/Login")
        assert future is controller.submit.return_value

    def test_deleted_branch_deletes(self):
        controller = MagicMock()

        identity, operation, _ = submit_payload(controller, {"ref": "refs/heads/feature/login", "deleted": True})

        assert operation == "delete"
        controller.submit.assert_called_once_with("delete", "featurelogin")

    @pytest.mark.parametrize("payload", [{}, {"ref": "refs/heads/..."}])
    def test_unusable_payload(self, payload):
        controller = MagicMock()

        with pytest.raises(InvalidIdentity):
            submit_payload(controller, payload)
        controller.submit.assert_not_called()


def test_handle_branch_ref_runs_create(controller):
    result = handle_branch_ref(controller, "refs/heads/feature/x")

    assert result.scratch.identity == "featurex"
    assert result.scratch.branch == "feature/x"
