"""Structured logging bridge."""

from __future__ import annotations

from affirmgate.util.logger import get_logger

_event_logger = get_logger("events")


def log_event(event: str, **payload: object) -> None:
    fields = " ".join(f"{key}={value}" for key, value in payload.items())
    _event_logger.info("event=%s %s", event, fields)
