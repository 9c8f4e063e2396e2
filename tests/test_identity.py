"""
Identity resolution tests.
"""

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from scratchpad.errors import InvalidIdentity  # noqa: E402
from scratchpad.identity import (  # noqa: E402
    branch_from_ref,
    is_valid_identity,
    resolve_identity,
    sanitize_branch,
)


class TestSanitizeBranch:
    def test_strips_disallowed_characters(self):
        assert sanitize_branch("feature/foo.bar") == "featurefoobar"

    def test_lowercases(self):
        assert sanitize_branch("Feature/FooBar") == "featurefoobar"

    def test_keeps_dash_and_underscore(self):
        assert sanitize_branch("fix/issue_42-login") == "fixissue_42-login"

    def test_none_is_empty(self):
        assert sanitize_branch(None) == ""


class TestResolveIdentity:
    def test_resolves_branch(self):
        assert resolve_identity("release/2.0") == "release20"

    @pytest.mark.parametrize("branch", ["", "///", "...", None])
    def test_empty_result_rejected(self, branch):
        with pytest.raises(InvalidIdentity):
            resolve_identity(branch)

    def test_distinct_branches_can_collide(self):
        assert resolve_identity("feature/a.b") == resolve_identity("featureab")


class TestIsValidIdentity:
    def test_canonical(self):
        assert is_valid_identity("featurefoobar")

    def test_not_canonical(self):
        assert not is_valid_identity("Feature")
        assert not is_valid_identity("a/b")
        assert not is_valid_identity("")
        assert not is_valid_identity(None)


class TestBranchFromRef:
    def test_strips_heads_prefix(self):
        assert branch_from_ref("refs/heads/feature/x") == "feature/x"

    def test_plain_branch_untouched(self):
        assert branch_from_ref("main") == "main"
