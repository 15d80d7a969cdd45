"""Configuration loading — HCL and JSON syntax into a typed ``Document``.

HCL files are parsed with ``python-hcl2``; ``*.json`` files use the JSON
configuration syntax. Both produce the same raw shape (block kinds mapping
to labelled bodies), which ``build_document`` turns into models.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import hcl2

from strataform.core.expressions import strip_interpolation
from strataform.errors import ParseError
from strataform.models.document import (
    Document,
    Lifecycle,
    Output,
    ProviderBlock,
    ResourceBlock,
    ResourceMode,
    Variable,
)

logger = logging.getLogger(__name__)

HCL_SUFFIXES = (".tf", ".hcl")
JSON_SUFFIXES = (".tf.json", ".json")

_KNOWN_BLOCKS = {"resource", "data", "variable", "output", "provider", "terraform"}
_UNSUPPORTED_META = {"count", "for_each"}


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def load_path(path: Path) -> Document:
    """Load a configuration file, or every configuration file in a directory."""
    path = Path(path)
    if path.is_dir():
        files = sorted(
            p for p in path.iterdir()
            if p.is_file() and (p.name.endswith(HCL_SUFFIXES) or p.name.endswith(".tf.json"))
        )
        if not files:
            raise ParseError(f"no configuration files found in {path}")
    elif path.is_file():
        files = [path]
    else:
        raise ParseError(f"configuration path does not exist: {path}")

    raws: list[tuple[dict[str, Any], str]] = []
    for file in files:
        text = file.read_text(encoding="utf-8")
        if file.name.endswith(JSON_SUFFIXES):
            raws.append((_parse_json(text, str(file)), str(file)))
        else:
            raws.append((_parse_hcl(text, str(file)), str(file)))
    logger.debug("Loaded %d configuration file(s) from %s", len(files), path)
    return build_document(raws)


def loads_hcl(text: str, source: str = "<string>") -> Document:
    """Parse HCL configuration text."""
    return build_document([(_parse_hcl(text, source), source)])


def loads_json(text: str, source: str = "<string>") -> Document:
    """Parse JSON-syntax configuration text."""
    return build_document([(_parse_json(text, source), source)])


def _parse_hcl(text: str, source: str) -> dict[str, Any]:
    try:
        raw = hcl2.loads(text)
    except Exception as exc:
        raise ParseError(f"{source}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ParseError(f"{source}: expected a block document")
    return raw


def _parse_json(text: str, source: str) -> dict[str, Any]:
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"{source}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ParseError(f"{source}: expected a JSON object at the top level")
    return raw


# ---------------------------------------------------------------------------
# Raw tree -> Document
# ---------------------------------------------------------------------------


def build_document(raws: list[tuple[dict[str, Any], str]]) -> Document:
    """Turn parsed raw trees (one per file) into a single ``Document``."""
    resources: list[ResourceBlock] = []
    variables: dict[str, Variable] = {}
    outputs: dict[str, Output] = {}
    providers: dict[str, ProviderBlock] = {}
    seen: set[str] = set()

    for raw, source in raws:
        for kind, value in raw.items():
            if kind not in _KNOWN_BLOCKS:
                raise ParseError(f"{source}: unsupported block type {kind!r}")
            if kind not in ("resource", "data"):
                continue
            mode = ResourceMode.MANAGED if kind == "resource" else ResourceMode.DATA
            for rtype, name, body in _labelled(value, source, kind):
                block = _resource_block(mode, rtype, name, body, len(resources), source)
                if block.address in seen:
                    raise ParseError(f"{source}: duplicate declaration of {block.address}")
                seen.add(block.address)
                resources.append(block)

        for (name,), body in _labelled_one(raw.get("variable"), source, "variable"):
            if name in variables:
                raise ParseError(f"{source}: duplicate variable {name!r}")
            variables[name] = _variable(name, body, source)

        for (name,), body in _labelled_one(raw.get("output"), source, "output"):
            if name in outputs:
                raise ParseError(f"{source}: duplicate output {name!r}")
            if "value" not in body:
                raise ParseError(f"{source}: output {name!r} has no value")
            outputs[name] = Output(
                name=name,
                value=body["value"],
                description=str(body.get("description", "")),
                sensitive=bool(body.get("sensitive", False)),
            )

        for (name,), body in _labelled_one(raw.get("provider"), source, "provider"):
            arguments = {k: v for k, v in body.items() if k != "alias"}
            if "alias" in body:
                logger.warning("%s: provider alias %r ignored", source, body["alias"])
            providers.setdefault(name, ProviderBlock(name=name, arguments=arguments))

    return Document(
        resources=resources,
        variables=variables,
        outputs=outputs,
        providers=providers,
        sources=[source for _, source in raws],
    )


def _blocks(value: Any) -> list[dict[str, Any]]:
    """HCL yields lists of single-key dicts; JSON syntax yields plain dicts."""
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list) and all(isinstance(v, dict) for v in value):
        return value
    raise ParseError(f"malformed block structure: {value!r}")


def _unquote(label: str) -> str:
    label = str(label)
    if len(label) >= 2 and label[0] == label[-1] == '"':
        return label[1:-1]
    return label


def _body(value: Any, source: str, what: str) -> dict[str, Any]:
    if isinstance(value, list):
        if len(value) != 1 or not isinstance(value[0], dict):
            raise ParseError(f"{source}: malformed body for {what}")
        value = value[0]
    if not isinstance(value, dict):
        raise ParseError(f"{source}: malformed body for {what}")
    return {k: v for k, v in value.items() if not (k.startswith("__") and k.endswith("__"))}


def _labelled(value: Any, source: str, kind: str):
    for item in _blocks(value):
        for rtype, named in item.items():
            for named_item in _blocks(named):
                for name, body in named_item.items():
                    yield _unquote(rtype), _unquote(name), _body(
                        body, source, f"{kind} {rtype}.{name}"
                    )


def _labelled_one(value: Any, source: str, kind: str):
    for item in _blocks(value):
        for name, body in item.items():
            yield (_unquote(name),), _body(body, source, f"{kind} {name}")


def _resource_block(
    mode: ResourceMode,
    rtype: str,
    name: str,
    body: dict[str, Any],
    index: int,
    source: str,
) -> ResourceBlock:
    arguments = dict(body)
    for meta in _UNSUPPORTED_META:
        if meta in arguments:
            raise ParseError(f"{source}: {rtype}.{name}: {meta!r} is not supported")

    lifecycle = Lifecycle()
    if "lifecycle" in arguments:
        raw_lifecycle = _body(arguments.pop("lifecycle"), source, f"lifecycle of {rtype}.{name}")
        ignore = raw_lifecycle.get("ignore_changes", [])
        if isinstance(ignore, str):
            ignore = [ignore]
        lifecycle = Lifecycle(
            create_before_destroy=bool(raw_lifecycle.get("create_before_destroy", False)),
            prevent_destroy=bool(raw_lifecycle.get("prevent_destroy", False)),
            ignore_changes=[strip_interpolation(str(i)) for i in ignore],
        )

    depends_on = arguments.pop("depends_on", [])
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    provider = arguments.pop("provider", "")
    if provider:
        provider = strip_interpolation(str(provider)).split(".", 1)[0]

    return ResourceBlock(
        mode=mode,
        type=rtype,
        name=name,
        arguments=arguments,
        lifecycle=lifecycle,
        depends_on=[strip_interpolation(str(d)) for d in depends_on],
        provider=provider,
        index=index,
        source=source,
    )


def _variable(name: str, body: dict[str, Any], source: str) -> Variable:
    var_type = body.get("type", "any")
    if not isinstance(var_type, str):
        raise ParseError(f"{source}: variable {name!r} has a malformed type")
    return Variable(
        name=name,
        type=strip_interpolation(var_type),
        default=body.get("default"),
        has_default="default" in body,
        description=str(body.get("description", "")),
        sensitive=bool(body.get("sensitive", False)),
    )
