from pathlib import Path, PurePosixPath

FORBIDDEN_COMPONENTS = {".git", ".env", ".ssh"}


def is_safe_relative_path(rel_path: str) -> bool:
    """True if rel_path is relative, non-empty and never steps above its root."""
    if not rel_path or "\x00" in rel_path:
        return False
    if rel_path.startswith(("/", "\\")) or PurePosixPath(rel_path).is_absolute():
        return False
    if len(rel_path) > 1 and rel_path[1] == ":":
        # Windows drive letter.
        return False
    parts = rel_path.replace("\\", "/").split("/")
    return ".." not in parts


def safe_resolve(root: Path, rel_path: str) -> Path:
    # Normalize root to avoid false "escape" on platforms where `resolve()`
    # canonicalizes paths (e.g., macOS /var -> /private/var).
    root = root.resolve()
    if not is_safe_relative_path(rel_path):
        raise ValueError("Path is absolute or traverses outside the repo root")
    p = (root / rel_path).resolve()
    if root != p and root not in p.parents:
        raise ValueError("Path escapes repo root")
    for part in p.relative_to(root).parts:
        if part in FORBIDDEN_COMPONENTS:
            raise ValueError(f"Forbidden path component: {part}")
    return p
