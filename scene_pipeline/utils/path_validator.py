"""Path and argument sanitization for external encoder commands."""

from pathlib import Path
from typing import Iterable, Optional

from scene_pipeline.core.exceptions import UnsafeArgumentError

CONTROL_CHARACTERS = ("\0", "\n", "\r")


def validate_argument(arg: str) -> None:
    """Reject arguments carrying control characters."""
    for char in CONTROL_CHARACTERS:
        if char in arg:
            raise UnsafeArgumentError(f"Argument contains a control character: {arg!r}")


def validate_media_path(path: str, allowed_roots: Optional[Iterable[str]] = None) -> Path:
    """
    Check a media path before it reaches an encoder command line.

    Args:
        path: File path passed to ffmpeg/ffprobe
        allowed_roots: If given and non-empty, the resolved path must live under one of these

    Returns:
        The path as a Path

    Raises:
        UnsafeArgumentError: On traversal segments, control characters or a path outside the roots
    """
    validate_argument(path)
    if not path:
        raise UnsafeArgumentError("Empty media path")

    candidate = Path(path)
    if ".." in candidate.parts:
        raise UnsafeArgumentError(f"Path traversal rejected: {path}")
    if path.startswith("-"):
        raise UnsafeArgumentError(f"Path looks like an option: {path}")

    roots = [Path(root).resolve() for root in (allowed_roots or []) if root]
    if roots:
        resolved = candidate.resolve()
        if not any(resolved == root or root in resolved.parents for root in roots):
            raise UnsafeArgumentError(f"Path outside allowed media roots: {path}")
    return candidate
