import pytest

from app.services.ai_output_parser import (
    OutputTextExtractionError,
    OutputTextParser,
    parse_json_payload,
    preview_text,
    validate_text,
)


def test_output_text_field_wins():
    parser = OutputTextParser()
    text, diagnostics = parser.extract({"status": "completed", "output_text": "Bonjour", "output": []})

    assert text == "Bonjour"
    assert diagnostics.extraction_method == "output_text"
    assert diagnostics.has_output_text is True


def test_message_item_content_is_joined():
    response = {
        "status": "completed",
        "output": [
            {"type": "reasoning", "content": []},
            {
                "type": "message",
                "content": [
                    {"type": "output_text", "text": '{"a": '},
                    {"type": "output_text", "text": "1}"},
                ],
            },
        ],
    }
    text, diagnostics = OutputTextParser().extract(response)

    assert text == '{"a": 1}'
    assert diagnostics.extraction_method == "message_content"
    assert diagnostics.output_types == ["reasoning", "message"]
    assert diagnostics.has_message_content is True


def test_chat_completion_content():
    response = {"choices": [{"message": {"role": "assistant", "content": "Réponse"}, "finish_reason": "stop"}]}
    text, diagnostics = OutputTextParser().extract(response)

    assert text == "Réponse"
    assert diagnostics.extraction_method == "chat_message_content"


def test_reasoning_fallback_and_incomplete_warning():
    response = {
        "status": "incomplete",
        "incomplete_details": {"reason": "max_output_tokens"},
        "output": [{"type": "reasoning", "content": [{"type": "reasoning_text", "text": "Partial answer"}]}],
    }
    text, diagnostics = OutputTextParser().extract(response)

    assert text == "Partial answer"
    assert diagnostics.extraction_method == "fallback_reasoning"
    assert any("incomplete" in warning for warning in diagnostics.warnings)


def test_refusal_is_used_as_text_like_fallback():
    response = {"choices": [{"message": {"content": None, "refusal": "Je ne peux pas"}}]}
    text, diagnostics = OutputTextParser().extract(response)

    assert text == "Je ne peux pas"
    assert diagnostics.extraction_method == "fallback_text_like"


def test_failure_is_counted_and_raises():
    parser = OutputTextParser()
    with pytest.raises(OutputTextExtractionError):
        parser.extract_or_raise({"choices": [{"message": {"content": "  "}}]})

    stats = parser.stats()
    assert stats["attempts"] == 1
    assert stats["failures"] == 1


def test_should_alert_needs_enough_attempts():
    parser = OutputTextParser()
    for _ in range(5):
        parser.extract({"output": []})
    assert parser.should_alert() is False

    for _ in range(5):
        parser.extract({"output_text": "valid text"})
    assert parser.stats()["failure_rate"] == 0.5
    assert parser.should_alert() is True


def test_validate_text_rules():
    assert validate_text("abc")
    assert not validate_text("ab")
    assert not validate_text("...")
    assert not validate_text(None)


def test_parse_json_payload_handles_fences_and_prose():
    assert parse_json_payload('```json\n{"x": [1, 2]}\n```') == {"x": [1, 2]}
    assert parse_json_payload('Voici le résultat : {"ok": true} merci') == {"ok": True}
    assert parse_json_payload('[{"a": "}"}]') == [{"a": "}"}]


def test_parse_json_payload_rejects_truncated_output():
    with pytest.raises(OutputTextExtractionError):
        parse_json_payload('{"candidates": [{"lat": 45.1')


def test_preview_is_bounded():
    assert len(preview_text("x" * 200)) == 80
    assert preview_text("a\nb") == "a b"
