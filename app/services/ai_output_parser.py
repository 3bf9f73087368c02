"""Text extraction from OpenAI responses with layered fallbacks."""

from __future__ import annotations

import json
import logging
import re
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

CODE_FENCE_PATTERN = re.compile(r"```(json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
TEXT_LIKE_KEYS = ("refusal", "summary")
MIN_ALERT_ATTEMPTS = 10


class OutputTextExtractionError(RuntimeError):
    """Raised when no usable text or JSON can be pulled from a response."""


@dataclass
class ParseDiagnostics:
    status: Optional[str] = None
    output_types: List[str] = field(default_factory=list)
    has_output_text: bool = False
    has_message_content: bool = False
    content_length: int = 0
    extraction_method: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "output_types": list(self.output_types),
            "has_output_text": self.has_output_text,
            "has_message_content": self.has_message_content,
            "content_length": self.content_length,
            "extraction_method": self.extraction_method,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


def _as_dict(value: Any) -> Any:
    """Convert SDK objects into plain dicts/lists."""

    if hasattr(value, "model_dump"):
        return value.model_dump()
    if isinstance(value, dict):
        return value
    if isinstance(value, (list, tuple)):
        return [_as_dict(item) for item in value]
    return value


def validate_text(text: Optional[str]) -> bool:
    """Return True when the text looks like real model output."""

    if not text or not isinstance(text, str):
        return False
    stripped = text.strip()
    if len(stripped) < 3:
        return False
    return any(char.isalnum() for char in stripped)


def _part_text(part: Any) -> Optional[str]:
    if isinstance(part, str):
        return part
    if not isinstance(part, dict):
        return None
    text = part.get("text")
    if isinstance(text, dict):
        text = text.get("value")
    return text if isinstance(text, str) else None


def _join_parts(parts: Any, allowed_types: Tuple[str, ...]) -> Optional[str]:
    if isinstance(parts, str):
        return parts
    if not isinstance(parts, list):
        return None
    chunks = []
    for part in parts:
        if isinstance(part, dict) and part.get("type") not in allowed_types:
            continue
        text = _part_text(part)
        if text:
            chunks.append(text)
    return "".join(chunks) if chunks else None


class OutputTextParser:
    """Pull assistant text out of Responses or Chat Completions payloads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._attempts = 0
        self._successes = 0
        self._failures = 0
        self._methods: Counter = Counter()

    def extract(self, response: Any) -> Tuple[Optional[str], ParseDiagnostics]:
        payload = _as_dict(response)
        diagnostics = ParseDiagnostics()
        text: Optional[str] = None
        method: Optional[str] = None

        if isinstance(payload, dict):
            diagnostics.status = payload.get("status")
            if diagnostics.status == "incomplete":
                reason = (payload.get("incomplete_details") or {}).get("reason")
                diagnostics.warnings.append(f"Response incomplete ({reason or 'unknown reason'})")
            output = payload.get("output") or []
            diagnostics.output_types = [
                str(item.get("type")) for item in output if isinstance(item, dict)
            ]
            diagnostics.has_output_text = bool(payload.get("output_text"))

            for strategy in (
                self._from_output_text,
                self._from_message_item,
                self._from_any_item,
                self._from_chat_choice,
                self._from_reasoning,
                self._from_text_like,
                self._from_embedded_json,
            ):
                text, method = strategy(payload, diagnostics)
                if validate_text(text):
                    break
                text, method = None, None
        elif isinstance(payload, str):
            text, method = payload, "raw_string"
        else:
            diagnostics.errors.append(f"Unsupported response type {type(response).__name__}")

        with self._lock:
            self._attempts += 1
            if text is not None and validate_text(text):
                self._successes += 1
                self._methods[method] += 1
            else:
                self._failures += 1

        if text is None:
            diagnostics.errors.append("No text could be extracted from the response")
        else:
            diagnostics.extraction_method = method
            diagnostics.content_length = len(text)
        return text, diagnostics

    def extract_or_raise(self, response: Any) -> Tuple[str, ParseDiagnostics]:
        text, diagnostics = self.extract(response)
        if text is None:
            logger.warning("Output extraction failed: %s", diagnostics.as_dict())
            raise OutputTextExtractionError("; ".join(diagnostics.errors) or "Empty response")
        return text, diagnostics

    @staticmethod
    def _from_output_text(payload: Dict[str, Any], diagnostics: ParseDiagnostics):
        direct = payload.get("output_text")
        if isinstance(direct, str) and direct:
            return direct, "output_text"
        for item in payload.get("output") or []:
            if isinstance(item, dict) and item.get("type") == "output_text":
                return _part_text(item), "output_text_item"
        return None, None

    @staticmethod
    def _from_message_item(payload: Dict[str, Any], diagnostics: ParseDiagnostics):
        for item in payload.get("output") or []:
            if isinstance(item, dict) and item.get("type") == "message":
                diagnostics.has_message_content = bool(item.get("content"))
                text = _join_parts(item.get("content"), ("output_text", "text"))
                if text:
                    return text, "message_content"
        return None, None

    @staticmethod
    def _from_any_item(payload: Dict[str, Any], diagnostics: ParseDiagnostics):
        for item in payload.get("output") or []:
            if not isinstance(item, dict) or item.get("type") == "reasoning":
                continue
            text = _part_text(item)
            if text:
                return text, "item_text"
            content = item.get("content")
            if isinstance(content, list):
                for part in content:
                    text = _part_text(part)
                    if text:
                        return text, "item_content_text"
        return None, None

    @staticmethod
    def _from_chat_choice(payload: Dict[str, Any], diagnostics: ParseDiagnostics):
        choices = payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return None, None
        message = choices[0].get("message") or {}
        if choices[0].get("finish_reason") == "length":
            diagnostics.warnings.append("Completion truncated by max tokens")
        content = message.get("content")
        if isinstance(content, list):
            content = _join_parts(content, ("text", "output_text"))
        if content:
            diagnostics.has_message_content = True
            return content, "chat_message_content"
        return None, None

    @staticmethod
    def _from_reasoning(payload: Dict[str, Any], diagnostics: ParseDiagnostics):
        for item in payload.get("output") or []:
            if isinstance(item, dict) and item.get("type") == "reasoning":
                text = _join_parts(item.get("content"), ("reasoning_text", "text", "output_text"))
                if not text:
                    text = _join_parts(item.get("summary"), ("summary_text",))
                if text:
                    diagnostics.warnings.append("Text recovered from reasoning content")
                    return text, "fallback_reasoning"
        return None, None

    @staticmethod
    def _from_text_like(payload: Dict[str, Any], diagnostics: ParseDiagnostics):
        sources: List[Dict[str, Any]] = [item for item in payload.get("output") or [] if isinstance(item, dict)]
        for choice in payload.get("choices") or []:
            if isinstance(choice, dict) and isinstance(choice.get("message"), dict):
                sources.append(choice["message"])
        for source in sources:
            for key in TEXT_LIKE_KEYS:
                value = source.get(key)
                if isinstance(value, str) and value.strip():
                    diagnostics.warnings.append(f"Text recovered from {key} field")
                    return value, "fallback_text_like"
        return None, None

    @staticmethod
    def _from_embedded_json(payload: Dict[str, Any], diagnostics: ParseDiagnostics):
        serialized = json.dumps(payload, default=str)
        for match in re.finditer(r'"(?:text|content)"\s*:\s*"((?:[^"\\]|\\.)+)"', serialized):
            try:
                candidate = json.loads(f'"{match.group(1)}"')
            except json.JSONDecodeError:
                continue
            if validate_text(candidate):
                diagnostics.warnings.append("Text recovered from embedded JSON")
                return candidate, "fallback_embedded_json"
        return None, None

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            attempts = self._attempts
            return {
                "attempts": attempts,
                "successes": self._successes,
                "failures": self._failures,
                "failure_rate": (self._failures / attempts) if attempts else 0.0,
                "methods": dict(self._methods),
            }

    def should_alert(self, threshold: float = 0.10) -> bool:
        stats = self.stats()
        return stats["attempts"] >= MIN_ALERT_ATTEMPTS and stats["failure_rate"] > threshold

    def reset(self) -> None:
        with self._lock:
            self._attempts = self._successes = self._failures = 0
            self._methods.clear()


def _strip_code_fences(raw_text: str) -> str:
    text = raw_text.strip()
    match = CODE_FENCE_PATTERN.search(text)
    if match:
        text = match.group(2).strip()
    if text.lower().startswith("json"):
        text = text[4:].lstrip()
    return text


def _extract_first_json_block(text: str) -> str:
    """Best-effort extraction of the first balanced JSON object or array."""

    starts = [index for index in (text.find("{"), text.find("[")) if index != -1]
    if not starts:
        raise OutputTextExtractionError("No JSON object found in model output")
    start = min(starts)
    opening = text[start]
    closing = "}" if opening == "{" else "]"

    depth = 0
    in_string = False
    escape = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == opening:
            depth += 1
        elif char == closing:
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]

    logger.warning("Truncated JSON detected. preview=%s", preview_text(text))
    raise OutputTextExtractionError("Model output contains truncated JSON")


def parse_json_payload(raw_text: str) -> Any:
    """Parse model output as JSON, tolerating code fences and surrounding prose."""

    if not raw_text:
        raise OutputTextExtractionError("Model returned no content")
    candidate = _strip_code_fences(raw_text)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    block = _extract_first_json_block(candidate)
    try:
        return json.loads(block)
    except json.JSONDecodeError as exc:
        logger.warning("Model JSON parsing failed. preview=%s", preview_text(block))
        raise OutputTextExtractionError("Model output is not valid JSON") from exc


def preview_text(text: Optional[str], limit: int = 80) -> str:
    safe = (text or "").replace("\n", " ").strip()
    if len(safe) <= limit:
        return safe
    return safe[: limit - 3] + "..."


__all__ = [
    "OutputTextExtractionError",
    "OutputTextParser",
    "ParseDiagnostics",
    "parse_json_payload",
    "preview_text",
    "validate_text",
]
