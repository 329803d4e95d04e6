"""
Security tests for file-scope enforcement.

These tests verify that the capability enforcer resolves paths before
matching them, so scope checks cannot be sidestepped.

Attack vectors tested:
- ../.. relative traversal
- Absolute paths outside allowed directories
- Symlink escape (resolved before matching)
- Traversal into a blocked subtree
- Mixed case tricks under a case-sensitive rule
- Multiple path arguments smuggling one bad path
"""

from pathlib import Path

import pytest

from steward.policy.enforcer import CapabilityEnforcer
from steward.schema import CapabilityGrant, PolicySnapshot, Scope, ToolCall


@pytest.fixture
def enforcer(make_policy, temp_dir: Path) -> CapabilityEnforcer:
    """File.Read inside temp_dir/work only, with temp_dir/work/private blocked."""
    work = temp_dir / "work"
    work.mkdir()
    policy: PolicySnapshot = make_policy(
        workspace_root=str(work),
        capabilities=[
            CapabilityGrant(
                name="File.Read",
                scope=Scope(allow_paths=[f"{work}/**"], block_paths=[f"{work}/private/**"]),
            ),
        ],
        approval_rules=[],
    )
    return CapabilityEnforcer(policy, case_sensitive=True)


def read(enforcer: CapabilityEnforcer, **arguments: object):
    call = ToolCall(call_id="c1", tool_name="read_file", arguments=arguments)
    return enforcer.check(call, "File.Read")


class TestRelativePathTraversal:
    """Tests for ../ path traversal attacks."""

    def test_simple_traversal_blocked(self, enforcer: CapabilityEnforcer) -> None:
        assert read(enforcer, path="../../../etc/passwd").denied

    def test_nested_traversal_blocked(self, enforcer: CapabilityEnforcer) -> None:
        """Going into a subdirectory first does not help."""
        assert read(enforcer, path="sub/../../outside.txt").denied

    def test_traversal_staying_inside_allowed(self, enforcer: CapabilityEnforcer) -> None:
        assert read(enforcer, path="sub/../notes.txt").allowed

    def test_traversal_into_blocked_subtree(self, enforcer: CapabilityEnforcer) -> None:
        decision = read(enforcer, path="public/../private/key.pem")
        assert decision.denied
        assert decision.rule.startswith("block_paths")


class TestAbsolutePaths:
    """Tests for absolute paths outside the allow list."""

    @pytest.mark.parametrize("path", ["/etc/passwd", "/root/.ssh/id_rsa", "/"])
    def test_system_paths_blocked(self, enforcer: CapabilityEnforcer, path: str) -> None:
        assert read(enforcer, path=path).denied

    def test_sibling_with_shared_prefix(self, enforcer: CapabilityEnforcer, temp_dir: Path) -> None:
        """A directory named like the allowed one plus a suffix is a different directory."""
        assert read(enforcer, path=str(temp_dir / "work-evil" / "a.txt")).denied

    def test_home_expansion_resolved(self, enforcer: CapabilityEnforcer) -> None:
        assert read(enforcer, path="~/.bashrc").denied


class TestSymlinkEscape:
    """Tests for symlinks pointing outside the allowed tree."""

    def test_symlink_out_of_scope(self, enforcer: CapabilityEnforcer, temp_dir: Path) -> None:
        outside = temp_dir / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("secret")
        link = temp_dir / "work" / "link"
        link.symlink_to(outside, target_is_directory=True)

        assert read(enforcer, path="link/secret.txt").denied

    def test_symlink_into_blocked_subtree(self, enforcer: CapabilityEnforcer, temp_dir: Path) -> None:
        private = temp_dir / "work" / "private"
        private.mkdir()
        (temp_dir / "work" / "shortcut").symlink_to(private, target_is_directory=True)

        assert read(enforcer, path="shortcut/key.pem").denied


class TestCaseTricks:
    """Tests for case variations under a case-sensitive rule."""

    def test_uppercase_directory_is_different(self, enforcer: CapabilityEnforcer, temp_dir: Path) -> None:
        assert read(enforcer, path=str(temp_dir / "WORK" / "a.txt")).denied


class TestMultiplePaths:
    """Every path argument is checked."""

    def test_one_bad_path_denies_the_call(self, enforcer: CapabilityEnforcer, temp_dir: Path) -> None:
        decision = read(enforcer, paths=[str(temp_dir / "work" / "a.txt"), "/etc/shadow"])
        assert decision.denied

    def test_source_and_destination_checked(self, enforcer: CapabilityEnforcer) -> None:
        assert read(enforcer, source="a.txt", destination="../escape.txt").denied
