"""JSON schema helpers for structured model outputs."""

from __future__ import annotations

import copy
import logging
import threading
from collections import Counter
from typing import Any, Dict, List

from jsonschema import Draft7Validator

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 5


class SchemaValidationError(RuntimeError):
    """Raised when model output does not satisfy the expected schema."""

    def __init__(self, schema_name: str, errors: List[str]):
        self.schema_name = schema_name
        self.errors = errors
        super().__init__(f"{schema_name} failed validation: " + "; ".join(errors))


def with_json_schema(request: Dict[str, Any], name: str, schema: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of the request asking the model for strict JSON output."""

    enriched = dict(request)
    enriched["response_format"] = {
        "type": "json_schema",
        "json_schema": {"name": name, "schema": copy.deepcopy(schema), "strict": True},
    }
    return enriched


def _format_error(error) -> str:
    path = "/".join(str(part) for part in error.absolute_path) or "<root>"
    return f"{path}: {error.message}"


class JsonSchemaEnforcer:
    """Validate parsed payloads and keep per-schema failure counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._validated = 0
        self._failed = 0
        self._failures_by_schema: Counter = Counter()
        self._validators: Dict[str, Draft7Validator] = {}

    def _validator(self, name: str, schema: Dict[str, Any]) -> Draft7Validator:
        validator = self._validators.get(name)
        if validator is None or validator.schema is not schema:
            validator = Draft7Validator(schema)
            self._validators[name] = validator
        return validator

    def validate(self, data: Any, schema: Dict[str, Any], *, name: str = "response") -> Any:
        validator = self._validator(name, schema)
        errors = sorted(validator.iter_errors(data), key=lambda err: [str(part) for part in err.absolute_path])
        with self._lock:
            self._validated += 1
            if errors:
                self._failed += 1
                self._failures_by_schema[name] += 1
        if errors:
            messages = [_format_error(error) for error in errors[:MAX_REPORTED_ERRORS]]
            logger.warning("Schema %s rejected model output: %s", name, messages)
            raise SchemaValidationError(name, messages)
        return data

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "validated": self._validated,
                "failed": self._failed,
                "success_rate": ((self._validated - self._failed) / self._validated) if self._validated else 1.0,
                "failures_by_schema": dict(self._failures_by_schema),
            }


_default_enforcer = JsonSchemaEnforcer()


def validate_against_schema(data: Any, schema: Dict[str, Any], *, name: str = "response") -> Any:
    return _default_enforcer.validate(data, schema, name=name)


__all__ = [
    "JsonSchemaEnforcer",
    "SchemaValidationError",
    "validate_against_schema",
    "with_json_schema",
]
