"""Document identity derived from an index name and a root-relative path."""

import posixpath
import string

ESCAPE = "_"
SEPARATOR = "~"

# Bytes written verbatim; everything else (including the escape) is escaped.
_SAFE_BYTES = frozenset((string.ascii_letters + string.digits + ".-").encode("ascii"))


def normalize_relative_path(relative_path: str) -> str:
    """
    Normalize a root-relative path to forward slashes.

    Backslashes become slashes, ``.`` segments and duplicate separators are
    dropped and leading ``/`` or ``./`` is removed.

    Args:
        relative_path: Path relative to the watched root

    Returns:
        The normalized path
    """
    path = relative_path.replace("\\", "/")
    parts = [p for p in path.split("/") if p and p != "."]
    return posixpath.join(*parts) if parts else ""


def encode_path(path: str) -> str:
    """Escape a normalized path into ``[A-Za-z0-9.-]`` plus ``_XX`` escapes."""
    out = []
    for byte in path.encode("utf-8"):
        if byte in _SAFE_BYTES:
            out.append(chr(byte))
        else:
            out.append(f"{ESCAPE}{byte:02X}")
    return "".join(out)


def build_document_id(index: str, relative_path: str) -> str:
    """
    Build the document identity for a file.

    The identity depends only on the index name and the normalized relative
    path. Both halves are escaped and joined with ``~``, which the escaping
    never emits, so distinct (index, path) pairs never collide. The result
    is safe to embed in a URL query parameter.

    Args:
        index: Target index name
        relative_path: Path of the file relative to its watched root

    Returns:
        Identity string such as ``docs~a.txt`` or ``docs~sub_2Fa_20b.txt``

    Raises:
        ValueError: If the index or the normalized path is empty
    """
    if not index or not index.strip():
        raise ValueError("index cannot be empty")
    normalized = normalize_relative_path(relative_path or "")
    if not normalized:
        raise ValueError(f"relative path is empty: {relative_path!r}")
    return f"{encode_path(index.strip())}{SEPARATOR}{encode_path(normalized)}"
