from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from riskwatch.asr.models import TranscriptFragment, WordTiming

FragmentCallback = Callable[[TranscriptFragment], None]
ErrorCallback = Callable[[BaseException], None]
CloseCallback = Callable[[], None]


class AudioSource(ABC):
    """Capture device handle owned by exactly one session controller."""

    @abstractmethod
    def open(self) -> None: ...

    @abstractmethod
    def read(self, timeout_sec: float) -> Optional[bytes]:
        """Return the next captured frame, or None when nothing arrived within the timeout."""

    @abstractmethod
    def pause(self) -> None: ...

    @abstractmethod
    def resume(self) -> None: ...

    @abstractmethod
    def close(self) -> Optional[str]:
        """Stop capture and return a reference to the complete audio artifact, if one was written."""


class StreamingConnection(ABC):
    @abstractmethod
    def send_audio(self, frame: bytes) -> None: ...

    @abstractmethod
    def keep_alive(self) -> None: ...

    @abstractmethod
    def finish(self) -> None:
        """Signal end-of-stream; the provider flushes remaining fragments, then closes."""

    @abstractmethod
    def close(self) -> None: ...


class StreamingTranscriptionProvider(ABC):
    @abstractmethod
    def connect(
        self,
        on_fragment: FragmentCallback,
        on_error: ErrorCallback,
        on_close: CloseCallback,
    ) -> StreamingConnection: ...

    @abstractmethod
    def name(self) -> str: ...


class BatchTranscript(BaseModel):
    text: str
    words: List[WordTiming] = Field(default_factory=list)
    fragments: List[TranscriptFragment] = Field(default_factory=list)
    confidence: float = 0.0
    raw: Dict[str, Any] = Field(default_factory=dict)


class BatchTranscriptionProvider(ABC):
    @abstractmethod
    def transcribe(self, audio_ref: str) -> BatchTranscript: ...

    @abstractmethod
    def name(self) -> str: ...
