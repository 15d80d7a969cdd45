"""Variable resolution — explicit values, var files, environment, defaults.

Precedence (highest first): explicit ``--var`` assignments, var files in
the order given, ``STRATAFORM_VAR_<name>`` environment variables, then the
declared default. Values are coerced to the declared type.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import hcl2

from strataform.errors import VariableError
from strataform.models.document import Document, Variable

logger = logging.getLogger(__name__)

ENV_PREFIX = "STRATAFORM_VAR_"

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def parse_var_assignment(text: str) -> tuple[str, str]:
    """Split a ``name=value`` command-line assignment."""
    if "=" not in text:
        raise VariableError(f"invalid variable assignment {text!r}; expected NAME=VALUE")
    name, value = text.split("=", 1)
    name = name.strip()
    if not name:
        raise VariableError(f"invalid variable assignment {text!r}; empty name")
    return name, value


def load_var_file(path: Path) -> dict[str, Any]:
    """Load variable values from a JSON or HCL (``.tfvars``) file."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise VariableError(f"cannot read variable file {path}: {exc}") from exc
    try:
        data = json.loads(text) if path.suffix == ".json" else hcl2.loads(text)
    except Exception as exc:
        raise VariableError(f"malformed variable file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise VariableError(f"variable file {path} must hold a mapping")
    return data


def _base_type(type_expr: str) -> str:
    base = type_expr.strip().split("(", 1)[0].strip()
    if base == "set" or base == "tuple":
        return "list"
    if base == "object":
        return "map"
    return base or "any"


def coerce(variable: Variable, value: Any) -> Any:
    """Coerce *value* to the variable's declared type."""
    base = _base_type(variable.type)
    if value is None or base == "any":
        return value
    if base == "string":
        if isinstance(value, (dict, list)):
            raise VariableError(f"expected a string, got {type(value).__name__}", address=f"var.{variable.name}")
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)
    if base == "number":
        if isinstance(value, bool):
            raise VariableError("expected a number, got bool", address=f"var.{variable.name}")
        if isinstance(value, (int, float)):
            return value
        try:
            number = float(str(value).strip())
        except ValueError as exc:
            raise VariableError(f"expected a number, got {value!r}", address=f"var.{variable.name}") from exc
        return int(number) if number.is_integer() and "." not in str(value) else number
    if base == "bool":
        if isinstance(value, bool):
            return value
        lowered = str(value).strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise VariableError(f"expected a bool, got {value!r}", address=f"var.{variable.name}")
    if base in ("list", "map"):
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise VariableError(f"expected a {base} in JSON form, got {value!r}", address=f"var.{variable.name}") from exc
        expected = list if base == "list" else dict
        if not isinstance(value, expected):
            raise VariableError(f"expected a {base}, got {type(value).__name__}", address=f"var.{variable.name}")
        return value
    raise VariableError(f"unsupported variable type {variable.type!r}", address=f"var.{variable.name}")


def resolve_variables(
    document: Document,
    provided: Mapping[str, Any] | None = None,
    *,
    var_files: Sequence[Path] = (),
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Resolve every declared variable once for this run.

    Raises ``VariableError`` for undeclared assignments and for required
    variables that received no value.
    """
    environ = os.environ if environ is None else environ
    provided = dict(provided or {})

    layered: dict[str, Any] = {}
    for var_file in var_files:
        layered.update(load_var_file(var_file))
    layered.update(provided)

    for name in layered:
        if name not in document.variables:
            raise VariableError(f"value given for undeclared variable {name!r}")

    values: dict[str, Any] = {}
    for name, variable in document.variables.items():
        if name in layered:
            raw = layered[name]
        elif f"{ENV_PREFIX}{name}" in environ:
            raw = environ[f"{ENV_PREFIX}{name}"]
        elif variable.has_default:
            raw = variable.default
        else:
            raise VariableError("no value for required variable", address=f"var.{name}")
        values[name] = coerce(variable, raw)
        logger.debug("Resolved var.%s", name)
    return values
