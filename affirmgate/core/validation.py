"""Inbound message validation, run before any upstream call."""

from __future__ import annotations

from typing import Any

from affirmgate.core.errors import ValidationError
from affirmgate.core.models import GenerationRequest
from affirmgate.util.logger import logger


def validate_generation_payload(body: Any, *, min_length: int, max_length: int) -> GenerationRequest:
    """Return the trimmed request or raise ``ValidationError`` for the first failed check."""

    message = body.get("message") if isinstance(body, dict) else None
    if message is None:
        logger.warning("validation failed missing message field")
        raise ValidationError("MISSING_MESSAGE", "Please share how you are feeling.")

    if not isinstance(message, str):
        logger.warning("validation failed invalid message type=%s", type(message).__name__)
        raise ValidationError("INVALID_TYPE", "Invalid message format.")

    trimmed = message.strip()
    if not trimmed:
        logger.warning("validation failed empty message after trim")
        raise ValidationError("EMPTY_MESSAGE", "Please share how you are feeling.")

    if len(trimmed) < min_length:
        logger.warning("validation failed message too short length=%d min=%d", len(trimmed), min_length)
        raise ValidationError("MESSAGE_TOO_SHORT", "Please share a bit more about how you are feeling.")

    if len(trimmed) > max_length:
        logger.warning("validation failed message too long length=%d max=%d", len(trimmed), max_length)
        raise ValidationError(
            "MESSAGE_TOO_LONG",
            f"Please keep your message under {max_length} characters.",
        )

    return GenerationRequest(message=trimmed)
