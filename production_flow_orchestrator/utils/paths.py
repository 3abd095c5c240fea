"""
Key-path lookup over trigger event payloads.

Supports dotted paths (``item.status``), an optional ``$.`` prefix and list
indices (``items[0].serial``).
"""

import re
from typing import Any, List, Mapping, Sequence, Union

_TOKEN = re.compile(r"([^.\[\]]+)|\[(-?\d+)\]")


class PathNotFoundError(KeyError):
    """Raised when a key path does not resolve against a payload."""

    def __init__(self, path: str):
        super().__init__(path)
        self.path = path

    def __str__(self) -> str:
        return f"field '{self.path}' not found"


def parse_path(path: str) -> List[Union[str, int]]:
    """Split a key path into dictionary keys and list indices."""
    if path.startswith("$."):
        path = path[2:]
    elif path == "$":
        return []

    tokens: List[Union[str, int]] = []
    position = 0
    while position < len(path):
        if path[position] == ".":
            position += 1
            continue
        match = _TOKEN.match(path, position)
        if match is None:
            raise ValueError(f"malformed path {path!r}")
        key, index = match.groups()
        tokens.append(int(index) if index is not None else key)
        position = match.end()
    return tokens


def get_value_by_path(data: Any, path: str) -> Any:
    """Resolve ``path`` against ``data``; raise ``PathNotFoundError`` when absent."""
    current = data
    for token in parse_path(path):
        if isinstance(token, int):
            if not isinstance(current, Sequence) or isinstance(current, (str, bytes)):
                raise PathNotFoundError(path)
            try:
                current = current[token]
            except IndexError:
                raise PathNotFoundError(path)
        else:
            if not isinstance(current, Mapping) or token not in current:
                raise PathNotFoundError(path)
            current = current[token]
    return current


def has_path(data: Any, path: str) -> bool:
    try:
        get_value_by_path(data, path)
    except PathNotFoundError:
        return False
    return True
