"""Repository path validation (no traversal, no empty or dot segments)."""

import posixpath
import unicodedata
from typing import List

from filehub.errors import BadRequest

ROOT = "/"


def _is_safe_path_char(c: str) -> bool:
    """True if char is allowed in a path segment (no separators, no control chars)."""
    if c in "/\\":
        return False
    if ord(c) < 32 or ord(c) == 127:
        return False
    # Reject unassigned and other control/format code points
    return not unicodedata.category(c).startswith("C")


def validate_segment(segment: str) -> str:
    """Return segment if it may name a file or directory, else raise BadRequest."""
    if not segment or segment in (".", ".."):
        raise BadRequest(f"Invalid path segment: {segment!r}")
    if not all(_is_safe_path_char(c) for c in segment):
        raise BadRequest(f"Unsafe path segment: {segment!r}")
    return segment


def validate_path(path: str) -> str:
    """
    Return path unchanged if it is absolute and normalized, else raise BadRequest.
    "/" is the repository root; any other path has no trailing slash.
    """
    if not path or not path.startswith("/"):
        raise BadRequest(f"Path must be absolute: {path!r}")
    if "\\" in path:
        raise BadRequest(f"Path must not contain backslashes: {path!r}")
    if path == ROOT:
        return path
    for segment in path[1:].split("/"):
        validate_segment(segment)
    return path


def split_path(path: str) -> List[str]:
    """Segments of a validated path; [] for the root."""
    if path == ROOT:
        return []
    return path[1:].split("/")


def parent_path(path: str) -> str:
    """Parent of a validated non-root path."""
    return posixpath.dirname(path) or ROOT


def base_name(path: str) -> str:
    """Last segment of a validated path ("/" for the root)."""
    if path == ROOT:
        return ROOT
    return posixpath.basename(path)


def join_path(parent: str, name: str) -> str:
    """Child path of parent."""
    return f"/{name}" if parent == ROOT else f"{parent}/{name}"


def is_within(path: str, prefix: str) -> bool:
    """True if path equals prefix or lies below it (segment-aware: /docs does not contain /docs-old)."""
    if prefix == ROOT:
        return True
    return path == prefix or path.startswith(prefix + "/")


def rebase(path: str, old_prefix: str, new_prefix: str) -> str:
    """Replace old_prefix with new_prefix at the start of path (which must lie within old_prefix)."""
    if path == old_prefix:
        return new_prefix
    return new_prefix.rstrip("/") + path[len(old_prefix.rstrip("/")):]
