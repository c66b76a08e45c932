"""Relay transport models."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel


class GenerationRequest(BaseModel):
    message: str


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class StreamTerminator:
    pass


StreamEvent = TextDelta | StreamTerminator
