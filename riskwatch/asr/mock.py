from __future__ import annotations

"""
Deterministic in-process providers for tests and local runs without provider credentials.
"""

import logging
import queue
import threading
import time
from typing import Iterable, Optional, Sequence

from riskwatch.asr.models import TranscriptFragment
from riskwatch.asr.providers import (
    AudioSource,
    BatchTranscript,
    BatchTranscriptionProvider,
    CloseCallback,
    ErrorCallback,
    FragmentCallback,
    StreamingConnection,
    StreamingTranscriptionProvider,
)
from riskwatch.internal_core.errors import ProviderStreamError

logger = logging.getLogger(__name__)


class MockAudioSource(AudioSource):
    """Replays a fixed list of frames; further reads block until the timeout."""

    def __init__(
        self,
        frames: Iterable[bytes] = (),
        *,
        audio_ref: Optional[str] = "mock://audio/session.wav",
        fail_on_open: bool = False,
    ) -> None:
        self._frames: "queue.Queue[bytes]" = queue.Queue()
        for frame in frames:
            self._frames.put(frame)
        self._audio_ref = audio_ref
        self._fail_on_open = fail_on_open
        self._paused = threading.Event()
        self.opened = False
        self.closed = False
        self.open_calls = 0
        self.bytes_read = 0

    def push(self, frame: bytes) -> None:
        self._frames.put(frame)

    def open(self) -> None:
        self.open_calls += 1
        if self._fail_on_open:
            raise OSError("audio device unavailable")
        self.opened = True

    def read(self, timeout_sec: float) -> Optional[bytes]:
        if self._paused.is_set() or self.closed:
            time.sleep(timeout_sec)
            return None
        try:
            frame = self._frames.get(timeout=timeout_sec)
        except queue.Empty:
            return None
        self.bytes_read += len(frame)
        return frame

    def pause(self) -> None:
        self._paused.set()

    def resume(self) -> None:
        self._paused.clear()

    def close(self) -> Optional[str]:
        self.closed = True
        return self._audio_ref if self.bytes_read > 0 else None


class MockStreamingConnection(StreamingConnection):
    def __init__(
        self,
        provider: "MockStreamingProvider",
        on_fragment: FragmentCallback,
        on_error: ErrorCallback,
        on_close: CloseCallback,
    ) -> None:
        self._provider = provider
        self._on_fragment = on_fragment
        self._on_error = on_error
        self._on_close = on_close
        self._lock = threading.Lock()
        self._closed = False
        self.frames_sent = 0
        self.keepalives = 0
        self.finished = False

    def emit(self, fragment: TranscriptFragment) -> None:
        self._on_fragment(fragment)

    def fail(self, message: str = "stream dropped") -> None:
        self._on_error(ProviderStreamError("PROVIDER_STREAM_FAILED", message, provider_name="mock"))

    def send_audio(self, frame: bytes) -> None:
        with self._lock:
            if self._closed:
                return
            self.frames_sent += 1
            index = self.frames_sent
        scripted = self._provider.fragments_for_frame(index)
        for fragment in scripted:
            self._on_fragment(fragment)
        if self._provider.fail_after_frames and index == self._provider.fail_after_frames:
            self.fail("provider closed the stream unexpectedly")

    def keep_alive(self) -> None:
        with self._lock:
            self.keepalives += 1

    def finish(self) -> None:
        with self._lock:
            if self.finished:
                return
            self.finished = True
        for fragment in self._provider.flush_fragments:
            self._on_fragment(fragment)
        if self._provider.close_on_finish:
            self._on_close()

    def close(self) -> None:
        with self._lock:
            self._closed = True


class MockStreamingProvider(StreamingTranscriptionProvider):
    """Scripted streaming provider.

    `script` maps a 1-based frame number to the fragments emitted when that frame
    is sent; `flush_fragments` are emitted on end-of-stream before close.
    """

    def __init__(
        self,
        script: Optional[dict[int, Sequence[TranscriptFragment]]] = None,
        *,
        flush_fragments: Sequence[TranscriptFragment] = (),
        fail_on_connect: bool = False,
        fail_after_frames: int = 0,
        close_on_finish: bool = True,
    ) -> None:
        self._script = {int(k): list(v) for k, v in (script or {}).items()}
        self.flush_fragments = list(flush_fragments)
        self.fail_on_connect = fail_on_connect
        self.fail_after_frames = fail_after_frames
        self.close_on_finish = close_on_finish
        self.connections: list[MockStreamingConnection] = []

    def name(self) -> str:
        return "mock"

    def fragments_for_frame(self, index: int) -> list[TranscriptFragment]:
        return list(self._script.get(index, []))

    def connect(
        self,
        on_fragment: FragmentCallback,
        on_error: ErrorCallback,
        on_close: CloseCallback,
    ) -> MockStreamingConnection:
        if self.fail_on_connect:
            raise ProviderStreamError("PROVIDER_CONNECT_FAILED", "mock provider refused connection", "mock")
        connection = MockStreamingConnection(self, on_fragment, on_error, on_close)
        self.connections.append(connection)
        return connection

    @property
    def last_connection(self) -> Optional[MockStreamingConnection]:
        return self.connections[-1] if self.connections else None


class MockBatchProvider(BatchTranscriptionProvider):
    """Returns a scripted transcript after `failures` failed calls."""

    def __init__(self, transcript: Optional[BatchTranscript] = None, *, failures: int = 0) -> None:
        self._transcript = transcript or BatchTranscript(text="")
        self._failures = failures
        self._lock = threading.Lock()
        self.calls: list[str] = []

    def name(self) -> str:
        return "mock"

    def transcribe(self, audio_ref: str) -> BatchTranscript:
        with self._lock:
            self.calls.append(audio_ref)
            attempt = len(self.calls)
        if attempt <= self._failures:
            logger.info("mock_batch_failure attempt=%s audio_ref=%s", attempt, audio_ref)
            raise ConnectionError(f"mock batch provider failure {attempt}")
        return self._transcript.model_copy(deep=True)
