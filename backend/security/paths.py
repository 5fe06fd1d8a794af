"""
Path security checks for files read from the local disk.

A path is accepted only when it is absolute and canonical, reasonably
short, free of control characters and traversal components, not itself a
symbolic link, and located under one of the permitted roots.
"""

import logging
import os
from pathlib import Path

from config import ALLOWED_UPLOAD_ROOTS, MAX_PATH_LENGTH

logger = logging.getLogger(__name__)

_ENCODED_TRAVERSAL = "%2e%2e"


class PathSecurityError(ValueError):
    """A local path failed a security check."""


def _has_control_characters(path: str) -> bool:
    return any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in path)


def _is_under(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def canonical_roots(roots) -> list[Path]:
    resolved = []
    for root in roots:
        try:
            resolved.append(Path(root).resolve())
        except OSError:
            continue
    return resolved


def validate_path(path: str | os.PathLike, allowed_roots=ALLOWED_UPLOAD_ROOTS) -> Path:
    """Return the canonical path, or raise PathSecurityError."""
    raw = os.fspath(path)

    if len(raw.encode("utf-8", errors="surrogateescape")) > MAX_PATH_LENGTH:
        raise PathSecurityError(f"Path exceeds {MAX_PATH_LENGTH} bytes")

    if _has_control_characters(raw):
        raise PathSecurityError("Path contains control characters")

    if not os.path.isabs(raw):
        raise PathSecurityError("Path is not absolute")

    for component in Path(raw).parts:
        if component == ".." or _ENCODED_TRAVERSAL in component.lower():
            raise PathSecurityError("Path contains traversal components")

    if os.path.islink(raw):
        raise PathSecurityError("Path is a symbolic link")

    try:
        canonical = Path(raw).resolve(strict=True)
    except (OSError, RuntimeError) as e:
        raise PathSecurityError(f"Cannot resolve path: {e}") from e

    # An intermediate symlink makes the canonical form differ.
    if str(canonical) != os.path.normpath(raw):
        raise PathSecurityError("Path is not canonical")

    roots = canonical_roots(allowed_roots)
    if not any(_is_under(canonical, root) for root in roots):
        raise PathSecurityError("Path is outside the permitted directories")

    return canonical
