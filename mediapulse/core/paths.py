from __future__ import annotations

import hashlib
import posixpath


class PathRewriteError(ValueError):
    pass


def normalize_path(raw_path: str) -> str:
    """Collapse separators and dot segments so equivalent spellings compare equal.

    Backslashes are treated as separators, repeated separators are merged, ``.`` and
    ``..`` segments are resolved and a trailing separator is dropped. A relative path
    that climbs above its own start cannot be anchored anywhere and is rejected.
    """
    candidate = raw_path.strip().replace("\\", "/")
    if not candidate:
        raise PathRewriteError("Path cannot be blank")
    if "\x00" in candidate:
        raise PathRewriteError("Path cannot contain NUL bytes")

    normalized = posixpath.normpath(candidate)
    # POSIX keeps a leading '//' as implementation defined; fold it
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    if normalized == ".." or normalized.startswith("../"):
        raise PathRewriteError(f"Path escapes its root: {raw_path}")
    return normalized


def is_within(path: str, prefix: str) -> bool:
    if prefix == "/":
        return path.startswith("/")
    if prefix == ".":
        return not path.startswith("/")
    return path == prefix or path.startswith(prefix + "/")


def rebase(path: str, prefix: str, replacement: str) -> str:
    if prefix == ".":
        remainder = path
    else:
        remainder = path[len(prefix):].lstrip("/")
    if not remainder or remainder == ".":
        return normalize_path(replacement)
    return normalize_path(posixpath.join(replacement, remainder))


def fingerprint(canonical_path: str) -> str:
    return hashlib.sha256(normalize_path(canonical_path).encode("utf-8")).hexdigest()
