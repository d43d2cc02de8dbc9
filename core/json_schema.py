from __future__ import annotations

from typing import Any, Dict

from jsonschema import exceptions as _jsonschema_exceptions
from jsonschema import validators as _jsonschema_validators


def validate_json_schema(schema: Any, *, context: str = "schema") -> None:
    """
    Validate that a JSON Schema itself is well-formed.
    Raises ValueError on invalid schema.
    """
    if not isinstance(schema, dict):
        raise ValueError(f"{context}: schema must be an object")
    try:
        validator_cls = _jsonschema_validators.validator_for(schema)
        validator_cls.check_schema(schema)
    except _jsonschema_exceptions.SchemaError as exc:
        raise ValueError(f"{context}: invalid JSON Schema ({exc.message})") from exc


def validate_instance(instance: Any, schema: Dict[str, Any]) -> None:
    """
    Validate `instance` against `schema`.
    Raises ValueError carrying the most relevant validation message.
    """
    validator_cls = _jsonschema_validators.validator_for(schema)
    validator = validator_cls(schema)
    error = _jsonschema_exceptions.best_match(validator.iter_errors(instance))
    if error is None:
        return
    location = "/".join(str(p) for p in error.absolute_path)
    if location:
        raise ValueError(f"{location}: {error.message}")
    raise ValueError(error.message)
