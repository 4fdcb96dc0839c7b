"""Slash-delimited path evaluation over decoded documents.

`/blockchain/head/seq` walks maps by key; purely numeric segments such as the
`0` in `/connections/0/height` index sequences. `/` and the empty path both
mean the whole document.
"""

from typing import Any

from .exceptions import NotFoundError, TypeMismatchError


def split_path(path: str) -> list[str]:
    """Split a path into its non-empty segments."""
    return [segment for segment in path.split("/") if segment]


def lookup(path: str, doc: Any) -> Any:
    """Resolve `path` against `doc` and return the node it points to.

    Args:
        path: Slash-delimited path, leading "/" optional
        doc: Decoded document (maps, lists and scalar leaves)

    Returns:
        The node found at the end of the path

    Raises:
        NotFoundError: A key is missing or an index is out of range
        TypeMismatchError: A segment can not be applied to the current node
    """
    node = doc
    walked: list[str] = []
    for segment in split_path(path):
        if isinstance(node, dict):
            if segment not in node:
                raise NotFoundError(f"key {segment!r} not found at /{'/'.join(walked)}")
            node = node[segment]
        elif isinstance(node, list):
            if not segment.isdigit():
                raise TypeMismatchError(
                    f"segment {segment!r} can not index the sequence at /{'/'.join(walked)}"
                )
            index = int(segment)
            if index >= len(node):
                raise NotFoundError(
                    f"index {index} out of range ({len(node)} items) at /{'/'.join(walked)}"
                )
            node = node[index]
        else:
            raise TypeMismatchError(
                f"node at /{'/'.join(walked)} is a {type(node).__name__}, "
                f"can not descend into {segment!r}"
            )
        walked.append(segment)
    return node


def as_float(value: Any, path: str = "") -> float:
    """Coerce a numeric leaf to float, booleans become 1.0 / 0.0."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    raise TypeMismatchError(f"node {path or '/'} is a {type(value).__name__}, expected a number")


def as_sequence(value: Any, path: str = "") -> list[Any]:
    """Assert a node is an ordered sequence."""
    if not isinstance(value, list):
        raise TypeMismatchError(f"node {path or '/'} is a {type(value).__name__}, expected a sequence")
    return value
