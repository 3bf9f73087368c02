"""Helpers to build and validate structured message arrays for OpenAI calls."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

VALID_ROLES = ("system", "user", "assistant")
INPUT_TEXT_TYPE = "input_text"

Message = Dict[str, Any]


class MessageValidationError(RuntimeError):
    """Raised when a message array cannot be sent to the model."""

    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__("Invalid messages: " + "; ".join(self.errors))


def create_message(role: str, text: str) -> Message:
    """Return a single structured message with one input_text part."""

    return {"role": role, "content": [{"type": INPUT_TEXT_TYPE, "text": (text or "").strip()}]}


def build_messages(
    system: str,
    user: str,
    assistant_history: Optional[Sequence[Tuple[str, str]]] = None,
) -> List[Message]:
    """Build a system/user message array, optionally with prior turns.

    ``assistant_history`` holds ``(user_text, assistant_text)`` pairs that are
    replayed between the system prompt and the final user message.
    """

    messages = [create_message("system", system)]
    for previous_user, previous_assistant in assistant_history or []:
        messages.append(create_message("user", previous_user))
        messages.append(create_message("assistant", previous_assistant))
    messages.append(create_message("user", user))
    return messages


def validate_messages(messages: Sequence[Message]) -> Tuple[List[str], List[str]]:
    """Return ``(errors, warnings)`` for the provided message array."""

    errors: List[str] = []
    warnings: List[str] = []
    if not messages:
        errors.append("Message array is empty")
        return errors, warnings

    for index, message in enumerate(messages):
        role = message.get("role") if isinstance(message, dict) else None
        if role not in VALID_ROLES:
            errors.append(f"Message {index}: invalid role {role!r}")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            errors.append(f"Message {index}: content must be a list")
            continue
        for part_index, part in enumerate(content):
            if not isinstance(part, dict) or part.get("type") != INPUT_TEXT_TYPE:
                errors.append(f"Message {index} part {part_index}: type must be {INPUT_TEXT_TYPE}")
                continue
            text = part.get("text")
            if not isinstance(text, str) or not text.strip():
                errors.append(f"Message {index} part {part_index}: text is empty")

    roles = [message.get("role") if isinstance(message, dict) else None for message in messages]
    if roles[0] != "system":
        warnings.append("First message is not a system message")
    for index in range(1, len(roles)):
        if roles[index] is not None and roles[index] == roles[index - 1]:
            warnings.append(f"Messages {index - 1} and {index} share role {roles[index]!r}")
    return errors, warnings


def build_validated_messages(system: str, user: str) -> List[Message]:
    messages = build_messages(system, user)
    errors, _ = validate_messages(messages)
    if errors:
        raise MessageValidationError(errors)
    return messages


def message_text(message: Message) -> str:
    parts = message.get("content") or []
    return "\n".join(part.get("text", "") for part in parts if isinstance(part, dict))


def message_stats(messages: Sequence[Message]) -> Dict[str, Any]:
    """Summarize the size of a message array."""

    by_role: Dict[str, int] = {role: 0 for role in VALID_ROLES}
    total_chars = 0
    for message in messages:
        role = message.get("role")
        if role in by_role:
            by_role[role] += 1
        total_chars += len(message_text(message))
    return {
        "message_count": len(messages),
        "by_role": by_role,
        "total_chars": total_chars,
        "estimated_tokens": math.ceil(total_chars / 4),
    }


def to_chat_messages(messages: Sequence[Message]) -> List[Dict[str, str]]:
    """Flatten structured messages to the Chat Completions format."""

    return [{"role": message["role"], "content": message_text(message)} for message in messages]


__all__ = [
    "MessageValidationError",
    "build_messages",
    "build_validated_messages",
    "create_message",
    "message_stats",
    "to_chat_messages",
    "validate_messages",
]
