from __future__ import annotations

from typing import Any

from jsonschema import Draft7Validator, FormatChecker
from jsonschema.exceptions import SchemaError
from jsonschema.validators import validator_for

SCHEMA_KEYWORDS = ("type", "properties", "items", "oneOf", "anyOf", "allOf")


def validate(schema: dict[str, Any], data: Any) -> list[str] | None:
    """Validate data against a JSON Schema.

    Returns None when the data conforms, otherwise one "<path> <message>" line
    per violation with the path written as a JSON pointer ("/" for the root).
    Draft-07 applies unless the schema names another draft in "$schema".
    """
    try:
        validator_cls = validator_for(schema, default=Draft7Validator)
        validator_cls.check_schema(schema)
        validator = validator_cls(schema, format_checker=FormatChecker())
        errors = sorted(validator.iter_errors(data), key=lambda error: _json_pointer(error.absolute_path))
    except SchemaError as exc:
        return [f"Schema validation error: {exc.message}"]

    if not errors:
        return None
    return [f"{_json_pointer(error.absolute_path)} {error.message}" for error in errors]


def is_well_formed(schema: Any) -> bool:
    """Shallow check used when a task declares an output schema."""
    if not isinstance(schema, dict):
        return False
    return any(schema.get(keyword) for keyword in SCHEMA_KEYWORDS)


def _json_pointer(path: Any) -> str:
    parts = [str(part).replace("~", "~0").replace("/", "~1") for part in path]
    if not parts:
        return "/"
    return "/" + "/".join(parts)
