import pytest

from app.services.ai_schema_service import JsonSchemaEnforcer, SchemaValidationError, with_json_schema

SCHEMA = {
    "type": "object",
    "required": ["score", "items"],
    "properties": {
        "score": {"type": "number", "minimum": 0, "maximum": 1},
        "items": {"type": "array", "items": {"type": "string"}},
    },
}


def test_with_json_schema_adds_strict_response_format_without_mutating_request():
    request = {"model": "gpt-5-mini", "messages": []}

    enriched = with_json_schema(request, "scoring", SCHEMA)

    assert "response_format" not in request
    response_format = enriched["response_format"]
    assert response_format["type"] == "json_schema"
    assert response_format["json_schema"]["name"] == "scoring"
    assert response_format["json_schema"]["strict"] is True
    assert response_format["json_schema"]["schema"] == SCHEMA


def test_valid_payload_passes_and_is_counted():
    enforcer = JsonSchemaEnforcer()
    payload = {"score": 0.4, "items": ["a"]}

    assert enforcer.validate(payload, SCHEMA, name="scoring") is payload
    assert enforcer.stats()["validated"] == 1
    assert enforcer.stats()["failed"] == 0


def test_invalid_payload_lists_error_paths():
    enforcer = JsonSchemaEnforcer()

    with pytest.raises(SchemaValidationError) as excinfo:
        enforcer.validate({"score": 3, "items": [1]}, SCHEMA, name="scoring")

    joined = " ".join(excinfo.value.errors)
    assert "score" in joined
    assert "items/0" in joined
    stats = enforcer.stats()
    assert stats["failed"] == 1
    assert stats["failures_by_schema"] == {"scoring": 1}
    assert stats["success_rate"] == 0.0
