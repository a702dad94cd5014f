from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

from .models import OperationParameter, OperationSchema

_REQUIRED = "required"
_PROPERTIES = "properties"

# Keywords rejected by strict structured-output / strict tool schemas.
_STRICT_UNSUPPORTED_KEYWORDS = frozenset(
    {
        "format",
        "pattern",
        "minLength",
        "maxLength",
        "minimum",
        "maximum",
        "exclusiveMinimum",
        "exclusiveMaximum",
        "multipleOf",
        "minItems",
        "maxItems",
        "uniqueItems",
        "minProperties",
        "maxProperties",
        "default",
        "examples",
        "example",
        "readOnly",
        "writeOnly",
        "nullable",
        "discriminator",
        "xml",
        "externalDocs",
        "deprecated",
    }
)


def build_denylist(names: Iterable[str]) -> FrozenSet[str]:
    return frozenset(name.strip().lower() for name in names if isinstance(name, str) and name.strip())


def _denied(name: Any, denylist: FrozenSet[str]) -> bool:
    return isinstance(name, str) and name.lower() in denylist


def trim(schema: Optional[Dict[str, Any]], denylist: FrozenSet[str]) -> Optional[Dict[str, Any]]:
    """Return a copy of ``schema`` without the denylisted properties.

    Every object node loses matching keys from ``properties`` and matching
    names from ``required`` (case-insensitive, survivors keep their order).
    All remaining values are visited, whatever their key, so nested objects
    and array item schemas are trimmed too. The input is never mutated.
    """
    if schema is None:
        return None
    return _trim_node(schema, denylist)


def _trim_node(node: Any, denylist: FrozenSet[str]) -> Any:
    if isinstance(node, list):
        return [_trim_node(item, denylist) for item in node]
    if not isinstance(node, dict):
        return node
    trimmed: Dict[str, Any] = {}
    for key, value in node.items():
        if key == _REQUIRED and isinstance(value, list):
            trimmed[key] = [
                name for name in value if isinstance(name, str) and not _denied(name, denylist)
            ]
        elif key == _PROPERTIES and isinstance(value, dict):
            trimmed[key] = {
                name: _trim_node(sub, denylist)
                for name, sub in value.items()
                if not _denied(name, denylist)
            }
        else:
            trimmed[key] = _trim_node(value, denylist)
    return trimmed


def to_strict_schema(schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Normalize a schema for strict tool adherence.

    Objects are closed with ``additionalProperties: false`` and list every
    property as required; properties that were optional become nullable.
    """
    if not schema:
        return {"type": "object", "properties": {}, "required": [], "additionalProperties": False}
    return _strict_node(schema)


def _strict_node(node: Any) -> Any:
    if isinstance(node, list):
        return [_strict_node(item) for item in node]
    if not isinstance(node, dict):
        return node
    strict: Dict[str, Any] = {}
    for key, value in node.items():
        if key in _STRICT_UNSUPPORTED_KEYWORDS:
            continue
        if key == _REQUIRED and not isinstance(value, list):
            continue
        if key == _PROPERTIES and isinstance(value, dict):
            strict[key] = {name: _strict_node(sub) for name, sub in value.items()}
        else:
            strict[key] = _strict_node(value)
    if _is_object_schema(strict):
        properties = strict.setdefault(_PROPERTIES, {})
        declared = node.get(_REQUIRED)
        originally_required = set(declared) if isinstance(declared, list) else set()
        for name, sub in list(properties.items()):
            if name not in originally_required:
                properties[name] = _make_nullable(sub)
        strict[_REQUIRED] = list(properties)
        strict["additionalProperties"] = False
    return strict


def _is_object_schema(node: Dict[str, Any]) -> bool:
    schema_type = node.get("type")
    if schema_type == "object":
        return True
    if isinstance(schema_type, list) and "object" in schema_type:
        return True
    return schema_type is None and _PROPERTIES in node


def _make_nullable(schema: Any) -> Any:
    if not isinstance(schema, dict):
        return schema
    schema = _admit_null_value(schema)
    schema_type = schema.get("type")
    if isinstance(schema_type, str):
        if schema_type == "null":
            return schema
        return {**schema, "type": [schema_type, "null"]}
    if isinstance(schema_type, list):
        if "null" in schema_type:
            return schema
        return {**schema, "type": [*schema_type, "null"]}
    if "anyOf" in schema:
        variants = schema["anyOf"]
        if any(isinstance(v, dict) and v.get("type") == "null" for v in variants):
            return schema
        return {**schema, "anyOf": [*variants, {"type": "null"}]}
    return {"anyOf": [schema, {"type": "null"}]}


def _admit_null_value(schema: Dict[str, Any]) -> Dict[str, Any]:
    # enum and const restrict values regardless of "type".
    if "const" in schema:
        rest = {key: value for key, value in schema.items() if key != "const"}
        return {**rest, "enum": [schema["const"], None]}
    enum = schema.get("enum")
    if isinstance(enum, list) and None not in enum:
        return {**schema, "enum": [*enum, None]}
    return schema


@dataclass(frozen=True)
class SchemaFilter:
    """Per-operation parameter filter.

    Only parameters whose ``(operation_id, parameter_name)`` pair is listed in
    ``targets`` (case-insensitive) are trimmed; every other schema passes
    through unchanged.
    """

    denylist: FrozenSet[str]
    targets: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    @classmethod
    def create(
        cls, denylist_names: Iterable[str], targets: Iterable[Tuple[str, str]]
    ) -> "SchemaFilter":
        normalized = tuple((op.lower(), param.lower()) for op, param in targets)
        return cls(denylist=build_denylist(denylist_names), targets=normalized)

    def matches(self, operation_id: str, parameter_name: str) -> bool:
        return (operation_id.lower(), parameter_name.lower()) in self.targets

    def __call__(self, operation: OperationSchema, parameter: OperationParameter) -> OperationParameter:
        if not self.matches(operation.operation_id, parameter.name):
            return parameter
        return parameter.model_copy(update={"schema_def": trim(parameter.schema_def, self.denylist)})
