"""The "unknown until applied" placeholder and its JSON encoding."""

from __future__ import annotations

from typing import Any

UNKNOWN_MARKER = "__unknown__"


class Unknown:
    """Placeholder for a value that is only known after apply.

    There is exactly one instance, ``UNKNOWN``. It never compares equal to a
    concrete value, so a diff against it always reports a change.
    """

    _instance: Unknown | None = None

    def __new__(cls) -> Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __copy__(self) -> Unknown:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> Unknown:
        return self

    def __reduce__(self) -> tuple[Any, ...]:
        return (Unknown, ())


UNKNOWN = Unknown()


def contains_unknown(value: Any) -> bool:
    """Return ``True`` if ``UNKNOWN`` appears anywhere inside *value*."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


def encode_unknowns(value: Any) -> Any:
    """Replace ``UNKNOWN`` with a JSON-safe marker object."""
    if value is UNKNOWN:
        return {UNKNOWN_MARKER: True}
    if isinstance(value, dict):
        return {k: encode_unknowns(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_unknowns(v) for v in value]
    return value


def decode_unknowns(value: Any) -> Any:
    """Inverse of :func:`encode_unknowns`."""
    if isinstance(value, dict):
        if value == {UNKNOWN_MARKER: True}:
            return UNKNOWN
        return {k: decode_unknowns(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_unknowns(v) for v in value]
    return value
