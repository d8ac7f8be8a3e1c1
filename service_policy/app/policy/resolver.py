"""
Dot-path attribute resolution against a policy context.
"""

from collections.abc import Mapping, Sequence
from typing import Any

from .models import PolicyContext

ROOTS = ("subject", "resource", "action", "data")


class _Undefined:
    """Marker for paths that do not resolve; distinct from ``None``."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


def _step(current: Any, part: str) -> Any:
    if isinstance(current, Mapping):
        return current[part] if part in current else UNDEFINED
    if isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
        if part.isdigit():
            index = int(part)
            if index < len(current):
                return current[index]
    return UNDEFINED


def resolve(path: str, context: PolicyContext) -> Any:
    """Resolve ``path`` (e.g. ``subject.department``) or return ``UNDEFINED``."""
    if not path:
        return UNDEFINED

    root, *rest = path.split(".")
    if root not in ROOTS:
        return UNDEFINED

    current = getattr(context, root)
    for part in rest:
        current = _step(current, part)
        if current is UNDEFINED:
            return UNDEFINED

    return current
