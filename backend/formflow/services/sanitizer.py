"""Sanitizer

Strips non-serializable members (callables) from arbitrary data before it is
persisted or handed to an external capability.

Only callables are removed. Dates, primitives and nested structures pass
through with their shape intact, and tuples and sets keep their type.
Self-referencing containers are cut at the point where they recur, so the
walk always terminates.
"""

from typing import Any


def _is_dropped(value: Any) -> bool:
    # Classes are callable too; they are not data either
    return callable(value)


def _walk(value: Any, path: set) -> Any:
    if isinstance(value, dict):
        marker = id(value)
        if marker in path:
            return None
        path.add(marker)
        try:
            return {
                key: _walk(member, path)
                for key, member in value.items()
                if not _is_dropped(member)
            }
        finally:
            path.discard(marker)

    if isinstance(value, (list, tuple, set, frozenset)):
        marker = id(value)
        if marker in path:
            return None
        path.add(marker)
        try:
            cleaned = [_walk(member, path) for member in value if not _is_dropped(member)]
        finally:
            path.discard(marker)
        for kind in (tuple, frozenset, set):
            if isinstance(value, kind):
                return kind(cleaned)
        return cleaned

    if _is_dropped(value):
        return None

    return value


def sanitize(value: Any) -> Any:
    """Return a copy of `value` with every callable member removed.

    Total: never raises, for any input. Idempotent:
    sanitize(sanitize(x)) == sanitize(x).
    """
    try:
        return _walk(value, set())
    except RecursionError:
        # Pathologically deep input; keep what is safely representable
        return None
