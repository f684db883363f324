"""Unit tests for safe_paths.py - path safety validation."""

import pytest

from handoff.safety.safe_paths import FORBIDDEN_COMPONENTS, is_safe_relative_path, safe_resolve


class TestIsSafeRelativePath:
    """Validation applied to every path parsed out of git output."""

    @pytest.mark.parametrize("path", ["src/app.py", "a b/c.txt", ".gitignore", "dir/..name"])
    def test_accepts_relative_paths(self, path):
        assert is_safe_relative_path(path)

    @pytest.mark.parametrize(
        "path", ["", "/etc/passwd", "\\server\\share", "C:\\Windows", "../x", "a/../../b", "a\\..\\b", "x\x00y"]
    )
    def test_rejects_unsafe_paths(self, path):
        assert not is_safe_relative_path(path)


class TestSafeResolve:
    """Test safe path resolution."""

    def test_resolve_simple_relative_path(self, tmp_path):
        result = safe_resolve(tmp_path, ".handoff/audit.jsonl")
        assert result == tmp_path.resolve() / ".handoff" / "audit.jsonl"

    def test_reject_absolute_path(self, tmp_path):
        with pytest.raises(ValueError, match="absolute or traverses"):
            safe_resolve(tmp_path, "/etc/passwd")

    def test_reject_parent_directory_escape(self, tmp_path):
        with pytest.raises(ValueError, match="absolute or traverses"):
            safe_resolve(tmp_path, "../../etc/passwd")

    def test_reject_empty_path(self, tmp_path):
        with pytest.raises(ValueError):
            safe_resolve(tmp_path, "")

    def test_all_forbidden_components(self, tmp_path):
        """Logs may never be written under .git, .env or .ssh."""
        for component in FORBIDDEN_COMPONENTS:
            with pytest.raises(ValueError, match="Forbidden path component"):
                safe_resolve(tmp_path, f"{component}/audit.jsonl")

    def test_symlink_escape_attempt(self, tmp_path):
        safe_dir = tmp_path / "safe"
        safe_dir.mkdir()
        symlink_path = safe_dir / "escape"
        try:
            symlink_path.symlink_to("/etc")
        except OSError:
            pytest.skip("Cannot create symlinks on this system")

        with pytest.raises(ValueError, match="Path escapes repo root"):
            safe_resolve(tmp_path, "safe/escape/passwd")

    def test_current_directory_reference(self, tmp_path):
        result = safe_resolve(tmp_path, "./logs/audit.jsonl")
        assert result == tmp_path.resolve() / "logs" / "audit.jsonl"
