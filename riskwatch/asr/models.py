from __future__ import annotations

"""
Typed transcript contracts produced by transcription providers.

Design intent:
- Enforce timestamp-valid word and fragment payloads at provider boundaries.
- Keep word-level timing attached to the fragment that owns it (pause and rate analysis).
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator


class WordTiming(BaseModel):
    model_config = ConfigDict(frozen=True)

    word: str
    start_ms: int = Field(ge=0)
    end_ms: int = Field(ge=0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    speaker: int | None = None
    punctuated_word: str | None = None

    @model_validator(mode="after")
    def _validate_window(self) -> "WordTiming":
        if self.end_ms < self.start_ms:
            raise ValueError("WordTiming.end_ms must be >= WordTiming.start_ms")
        return self

    @property
    def display_text(self) -> str:
        return self.punctuated_word or self.word


class TranscriptFragment(BaseModel):
    model_config = ConfigDict(frozen=True)

    speaker: int = 0
    text: str
    start_offset_ms: int = Field(ge=0)
    end_offset_ms: int = Field(ge=0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    is_final: bool = True
    words: list[WordTiming] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_window(self) -> "TranscriptFragment":
        if self.end_offset_ms < self.start_offset_ms:
            raise ValueError("TranscriptFragment.end_offset_ms must be >= TranscriptFragment.start_offset_ms")
        return self

    def slot_key(self) -> tuple[int, int]:
        return (self.speaker, self.start_offset_ms)
