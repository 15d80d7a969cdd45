"""Reference expressions inside argument values.

Any string value may embed ``${...}`` interpolations. Each interpolation must
hold a single reference:

- ``type.name.attribute[.path]`` — a managed resource
- ``data.type.name.attribute[.path]`` — a data source
- ``var.name[.path]`` — a variable

A string that is exactly one interpolation resolves to the referenced value
with its type preserved; any other string is a template whose interpolations
are rendered as text. ``$${`` escapes a literal ``${``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from strataform.errors import ParseError
from strataform.models.values import UNKNOWN

_INTERPOLATION = re.compile(r"(?<!\$)\$\{([^{}]*)\}")
_PART = re.compile(r'\.?([A-Za-z_][\w-]*)|\[(\d+)\]|\["([^"]*)"\]')
_UNSUPPORTED_ROOTS = {"local", "module", "count", "each", "self", "path", "terraform"}


class Reference(BaseModel):
    """A parsed reference expression."""

    model_config = ConfigDict(frozen=True)

    expression: str  # the text between ${ and }
    kind: Literal["resource", "data", "var"]
    target: str  # address of the referenced node
    path: tuple[str | int, ...] = ()  # attribute path below the target


def parse_reference(text: str) -> Reference:
    """Parse the inside of one interpolation into a :class:`Reference`."""
    expression = text.strip()
    parts: list[str | int] = []
    pos = 0
    while pos < len(expression):
        match = _PART.match(expression, pos)
        if match is None or match.end() == pos or (pos == 0 and expression[0] in ".["):
            raise ParseError(f"unsupported expression ${{{expression}}}")
        name, index, key = match.groups()
        if name is not None:
            parts.append(name)
        elif index is not None:
            parts.append(int(index))
        else:
            parts.append(key)
        pos = match.end()

    if not parts or not isinstance(parts[0], str):
        raise ParseError(f"unsupported expression ${{{expression}}}")
    root = parts[0]
    if root in _UNSUPPORTED_ROOTS:
        raise ParseError(f"unsupported expression ${{{expression}}}")

    if root == "var":
        if len(parts) < 2 or not isinstance(parts[1], str):
            raise ParseError(f"invalid variable reference ${{{expression}}}")
        return Reference(
            expression=expression, kind="var", target=f"var.{parts[1]}", path=tuple(parts[2:])
        )
    if root == "data":
        if len(parts) < 3 or not all(isinstance(p, str) for p in parts[1:3]):
            raise ParseError(f"invalid data source reference ${{{expression}}}")
        return Reference(
            expression=expression,
            kind="data",
            target=f"data.{parts[1]}.{parts[2]}",
            path=tuple(parts[3:]),
        )
    if len(parts) < 2 or not isinstance(parts[1], str):
        raise ParseError(f"unsupported expression ${{{expression}}}")
    return Reference(
        expression=expression,
        kind="resource",
        target=f"{parts[0]}.{parts[1]}",
        path=tuple(parts[2:]),
    )


def strip_interpolation(text: str) -> str:
    """Turn ``"${aws_instance.web}"`` into ``"aws_instance.web"``.

    Meta-arguments such as ``depends_on`` and ``ignore_changes`` may arrive
    either bare or wrapped, depending on the document syntax.
    """
    text = text.strip()
    if text.startswith("${") and text.endswith("}"):
        return text[2:-1].strip()
    return text


def find_references(value: Any) -> list[Reference]:
    """Return every reference inside *value*, in first-seen order."""
    found: list[Reference] = []
    seen: set[str] = set()

    def _walk(node: Any) -> None:
        if isinstance(node, str):
            for match in _INTERPOLATION.finditer(node):
                ref = parse_reference(match.group(1))
                if ref.expression not in seen:
                    seen.add(ref.expression)
                    found.append(ref)
        elif isinstance(node, dict):
            for child in node.values():
                _walk(child)
        elif isinstance(node, (list, tuple)):
            for child in node:
                _walk(child)

    _walk(value)
    return found


def traverse(value: Any, path: tuple[str | int, ...]) -> Any:
    """Walk *path* into *value*. Raises ``KeyError`` when a step is missing."""
    current = value
    for step in path:
        if current is UNKNOWN:
            return UNKNOWN
        if isinstance(current, dict):
            if step not in current:
                raise KeyError(step)
            current = current[step]
        elif isinstance(current, list) and isinstance(step, int):
            if step >= len(current):
                raise KeyError(step)
            current = current[step]
        elif isinstance(current, list) and len(current) == 1 and isinstance(current[0], dict):
            # single nested block: ``health_check.path``
            current = current[0]
            if step not in current:
                raise KeyError(step)
            current = current[step]
        else:
            raise KeyError(step)
    return current


def render_text(value: Any) -> str:
    """Render a resolved value for inclusion in a string template."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def resolve(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace every reference in *value* with ``lookup(reference)``.

    A template string containing any unknown interpolation resolves to
    ``UNKNOWN`` as a whole.
    """
    if isinstance(value, str):
        matches = list(_INTERPOLATION.finditer(value))
        if not matches:
            return value.replace("$${", "${")
        if len(matches) == 1 and matches[0].span() == (0, len(value)):
            return lookup(parse_reference(matches[0].group(1)))

        pieces: list[str] = []
        last = 0
        for match in matches:
            pieces.append(value[last:match.start()].replace("$${", "${"))
            resolved = lookup(parse_reference(match.group(1)))
            if resolved is UNKNOWN:
                return UNKNOWN
            pieces.append(render_text(resolved))
            last = match.end()
        pieces.append(value[last:].replace("$${", "${"))
        return "".join(pieces)
    if isinstance(value, dict):
        return {k: resolve(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve(v, lookup) for v in value]
    return value


def describe(value: Any) -> str:
    """Short, human-readable rendering used by plan output."""
    if value is UNKNOWN:
        return "(known after apply)"
    if isinstance(value, str):
        return json.dumps(value)
    if isinstance(value, (dict, list)):
        text = json.dumps(value, sort_keys=True, default=lambda v: repr(v))
        return text if len(text) <= 60 else text[:57] + "..."
    return render_text(value) if value is not None else "null"
