"""Domain enumerations."""

from __future__ import annotations

import enum


class Capability(str, enum.Enum):
    """A class of external functionality that several providers can supply."""

    LLM = "llm"
    TTS = "tts"


class SessionEndReason(str, enum.Enum):
    EXPIRED = "expired"
    ENDED = "ended"
