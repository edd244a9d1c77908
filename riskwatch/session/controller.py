from __future__ import annotations

"""
Drive one recording session from audio capture to persisted live flags.

Design intent:
- Own the capture device and the streaming connection for exactly one session.
- Serialize fragment handling on one event thread per session so detection sees
  the session-to-date flag list in order.
- Always run the same flush path on stop or on provider failure: whatever was
  transcribed before the stop or failure is persisted and handed to reprocessing.
"""

import datetime as _dt
import logging
import queue
import threading
import time
from typing import Any, Callable, Optional

from riskwatch.asr.fragment_buffer import FragmentBuffer
from riskwatch.asr.models import TranscriptFragment
from riskwatch.asr.providers import AudioSource, StreamingConnection, StreamingTranscriptionProvider
from riskwatch.internal_core import audit
from riskwatch.internal_core.config import RiskwatchConfig, load_config
from riskwatch.internal_core.contracts import RiskFlag, SessionState, SessionStatusView
from riskwatch.internal_core.errors import ProviderStreamError, RecordingStartError, SessionStateError
from riskwatch.internal_core.store import InMemoryClinicalStore
from riskwatch.live.broadcast import LiveBroadcastChannel
from riskwatch.risk.detector import RiskDetector

logger = logging.getLogger(__name__)

AudioReadyCallback = Callable[[str, str], Optional[str]]
CriticalFlagCallback = Callable[[str, RiskFlag], None]

_MAX_DRAIN_FRAMES = 1000


def _now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


class RecordingSessionController:
    def __init__(
        self,
        session_id: str,
        audio_source: AudioSource,
        streaming_provider: StreamingTranscriptionProvider,
        store: InMemoryClinicalStore,
        *,
        detector: Optional[RiskDetector] = None,
        broadcast: Optional[LiveBroadcastChannel] = None,
        config: Optional[RiskwatchConfig] = None,
        on_audio_ready: Optional[AudioReadyCallback] = None,
        on_critical_flag: Optional[CriticalFlagCallback] = None,
    ) -> None:
        cfg = config or load_config()
        self.session_id = session_id
        self._audio_source = audio_source
        self._provider = streaming_provider
        self._store = store
        self._detector = detector or RiskDetector()
        self.broadcast = broadcast or LiveBroadcastChannel(session_id, cfg.RISKWATCH_SUBSCRIBER_BUFFER)
        self._on_audio_ready = on_audio_ready
        self._on_critical_flag = on_critical_flag
        self._read_timeout_sec = cfg.RISKWATCH_AUDIO_READ_TIMEOUT_SEC
        self._keepalive_interval_sec = cfg.RISKWATCH_KEEPALIVE_INTERVAL_SEC
        self._final_fragment_timeout_sec = cfg.RISKWATCH_FINAL_FRAGMENT_TIMEOUT_SEC

        self._lifecycle_lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._state: SessionState = "idle"
        self._updated_at = _now_iso()
        self._error: Optional[ProviderStreamError] = None
        self._job_id: Optional[str] = None
        self._audio_ref: Optional[str] = None
        self._audio_bytes = 0

        self._connection: Optional[StreamingConnection] = None
        self._events: "queue.Queue[tuple[str, Any]]" = queue.Queue()
        self._buffer = FragmentBuffer()
        self._flags: list[RiskFlag] = []
        self._stop_capture = threading.Event()
        self._paused = threading.Event()
        self._provider_closed = threading.Event()
        self._finished = threading.Event()
        self._capture_thread: Optional[threading.Thread] = None
        self._event_thread: Optional[threading.Thread] = None

    # state

    @property
    def state(self) -> SessionState:
        with self._state_lock:
            return self._state

    @property
    def error(self) -> Optional[ProviderStreamError]:
        return self._error

    @property
    def job_id(self) -> Optional[str]:
        return self._job_id

    @property
    def audio_ref(self) -> Optional[str]:
        return self._audio_ref

    @property
    def flags(self) -> list[RiskFlag]:
        with self._state_lock:
            return list(self._flags)

    def _set_state(self, state: SessionState) -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
            self._updated_at = _now_iso()
        logger.info("session_state session_id=%s from=%s to=%s", self.session_id, previous, state)
        self.broadcast.publish("state", {"state": state})

    def snapshot(self) -> SessionStatusView:
        with self._state_lock:
            flags = list(self._flags)
            state = self._state
            updated_at = self._updated_at
        return SessionStatusView(
            session_id=self.session_id,
            state=state,
            fragments_final=len(self._buffer.final_fragments),
            fragments_interim=self._buffer.interim_count,
            flags_total=len(flags),
            critical_flags=sum(1 for item in flags if item.severity == "critical"),
            audio_bytes_captured=self._audio_bytes,
            subscribers=self.broadcast.subscriber_count,
            job_id=self._job_id,
            error=self._error.message if self._error is not None else None,
            updated_at=updated_at,
        )

    def wait_finished(self, timeout: Optional[float] = None) -> bool:
        return self._finished.wait(timeout)

    # lifecycle

    def start(self) -> None:
        with self._lifecycle_lock:
            if self.state != "idle":
                raise SessionStateError(self.session_id, self.state, "start")
            started = time.monotonic()
            try:
                self._audio_source.open()
            except Exception as exc:
                self._fail_start("AUDIO_OPEN_FAILED", f"audio source unavailable: {exc}")
                raise RecordingStartError("AUDIO_OPEN_FAILED", str(exc), self.session_id) from exc
            try:
                self._connection = self._provider.connect(self._on_fragment, self._on_error, self._on_close)
            except Exception as exc:
                self._release_audio_source()
                self._fail_start("PROVIDER_CONNECT_FAILED", f"provider={self._provider.name()} {exc}")
                raise RecordingStartError("PROVIDER_CONNECT_FAILED", str(exc), self.session_id) from exc

            self._store.set_transcript_status(self.session_id, "live_partial")
            self._event_thread = threading.Thread(
                target=self._event_loop, name=f"riskwatch-events-{self.session_id}", daemon=True
            )
            self._capture_thread = threading.Thread(
                target=self._capture_loop, name=f"riskwatch-capture-{self.session_id}", daemon=True
            )
            self._set_state("recording")
            audit.log_event(
                self._store,
                self.session_id,
                "SESSION_STARTED",
                "SESSION_START",
                f"provider={self._provider.name()}",
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            self._event_thread.start()
            self._capture_thread.start()

    def _fail_start(self, code: str, detail: str) -> None:
        self._error = ProviderStreamError(code, detail, self._provider.name())
        self._set_state("failed")
        self._store.set_transcript_status(self.session_id, "failed")
        audit.log_event(self._store, self.session_id, "SESSION_FAILED", code, detail)
        logger.error("session_start_failed session_id=%s code=%s detail=%s", self.session_id, code, detail)
        self.broadcast.close()
        self._finished.set()

    def pause(self) -> None:
        with self._lifecycle_lock:
            if self.state != "recording":
                raise SessionStateError(self.session_id, self.state, "pause")
            self._paused.set()
            self._audio_source.pause()
            self._set_state("paused")
            audit.log_event(self._store, self.session_id, "SESSION_PAUSED", "SESSION_PAUSE", "")

    def resume(self) -> None:
        with self._lifecycle_lock:
            if self.state != "paused":
                raise SessionStateError(self.session_id, self.state, "resume")
            self._audio_source.resume()
            self._paused.clear()
            self._set_state("recording")
            audit.log_event(self._store, self.session_id, "SESSION_RESUMED", "SESSION_RESUME", "")

    def stop(self) -> SessionStatusView:
        with self._lifecycle_lock:
            state = self.state
            if state in ("completed", "failed"):
                return self.snapshot()
            if state not in ("recording", "paused"):
                raise SessionStateError(self.session_id, state, "stop")
            self._finalize("completed")
            return self.snapshot()

    # provider / capture callbacks

    def _on_fragment(self, fragment: TranscriptFragment) -> None:
        self._events.put(("fragment", fragment))

    def _on_close(self) -> None:
        self._provider_closed.set()
        if self.state in ("recording", "paused"):
            self._on_error(
                ProviderStreamError("PROVIDER_CLOSED", "provider closed the stream", self._provider.name())
            )

    def _on_error(self, exc: BaseException) -> None:
        if isinstance(exc, ProviderStreamError):
            error = exc
        else:
            error = ProviderStreamError("PROVIDER_STREAM_FAILED", str(exc), self._provider.name())
        logger.error(
            "session_stream_error session_id=%s code=%s detail=%s", self.session_id, error.code, error.message
        )
        threading.Thread(
            target=self._fail, args=(error,), name=f"riskwatch-fail-{self.session_id}", daemon=True
        ).start()

    def _fail(self, error: ProviderStreamError) -> None:
        with self._lifecycle_lock:
            if self.state not in ("recording", "paused"):
                logger.info(
                    "session_stream_error_ignored session_id=%s state=%s code=%s",
                    self.session_id,
                    self.state,
                    error.code,
                )
                return
            self._error = error
            self._provider_closed.set()
            self._finalize("failed")

    def _capture_loop(self) -> None:
        last_sent = time.monotonic()
        while not self._stop_capture.is_set():
            if self._paused.is_set():
                if time.monotonic() - last_sent >= self._keepalive_interval_sec:
                    try:
                        self._connection.keep_alive()
                    except Exception as exc:
                        self._on_error(exc)
                        return
                    last_sent = time.monotonic()
                self._stop_capture.wait(min(self._read_timeout_sec, self._keepalive_interval_sec))
                continue
            try:
                frame = self._audio_source.read(self._read_timeout_sec)
            except Exception as exc:
                self._on_error(ProviderStreamError("AUDIO_CAPTURE_FAILED", str(exc), self._provider.name()))
                return
            if not frame:
                continue
            if not self._send_frame(frame):
                return
            last_sent = time.monotonic()

    def _send_frame(self, frame: bytes) -> bool:
        try:
            self._connection.send_audio(frame)
        except Exception as exc:
            self._on_error(exc)
            return False
        self._audio_bytes += len(frame)
        return True

    # event processing

    def _event_loop(self) -> None:
        while True:
            kind, item = self._events.get()
            if kind == "drain":
                return
            try:
                self._process_fragment(item)
            except Exception:
                logger.exception("fragment_processing_failed session_id=%s", self.session_id)

    def _process_fragment(self, fragment: TranscriptFragment) -> None:
        result = self._buffer.append(fragment)
        if not result.accepted:
            if result.duplicate:
                logger.debug(
                    "fragment_duplicate_dropped session_id=%s offset_ms=%s",
                    self.session_id,
                    fragment.start_offset_ms,
                )
            return
        self.broadcast.publish("fragment", fragment.model_dump())
        if not fragment.is_final:
            return

        new_flags = self._detector.detect(fragment.text, fragment.words, prior_flags=self.flags)
        if not fragment.words:
            new_flags = [self._anchor_to_fragment(item, fragment) for item in new_flags]
        if not new_flags:
            return
        with self._state_lock:
            self._flags.extend(new_flags)
        for flag in new_flags:
            self.broadcast.publish("flag", flag.model_dump())

        critical = [item for item in new_flags if item.severity == "critical"]
        if critical:
            self._store.save_flags(self.session_id, critical, source="live")
            for flag in critical:
                audit.log_event(
                    self._store,
                    self.session_id,
                    "CRITICAL_FLAG",
                    "CRITICAL_FLAG_RAISED",
                    f"type={flag.type} flag_id={flag.id} confidence={flag.confidence:.3f}",
                )
                logger.warning(
                    "critical_flag session_id=%s type=%s flag_id=%s", self.session_id, flag.type, flag.id
                )
                if self._on_critical_flag is not None:
                    try:
                        self._on_critical_flag(self.session_id, flag)
                    except Exception:
                        logger.exception("critical_flag_hook_failed session_id=%s flag_id=%s", self.session_id, flag.id)

    @staticmethod
    def _anchor_to_fragment(flag: RiskFlag, fragment: TranscriptFragment) -> RiskFlag:
        update: dict[str, Any] = {}
        if flag.session_relative_timestamp_ms == 0:
            update["session_relative_timestamp_ms"] = fragment.start_offset_ms
        if flag.speaker_id is None:
            update["speaker_id"] = fragment.speaker
        return flag.model_copy(update=update) if update else flag

    # flush

    def _finalize(self, terminal: SessionState) -> None:
        started = time.monotonic()
        self._set_state("stopping")
        self._stop_capture.set()
        if self._capture_thread is not None and self._capture_thread is not threading.current_thread():
            self._capture_thread.join(timeout=max(1.0, self._read_timeout_sec * 4))

        if terminal == "completed":
            self._drain_audio()
        self._audio_ref = self._release_audio_source()

        if self._connection is not None:
            try:
                self._connection.finish()
            except Exception:
                logger.exception("provider_finish_failed session_id=%s", self.session_id)
            if not self._provider_closed.wait(self._final_fragment_timeout_sec):
                logger.warning(
                    "provider_close_timeout session_id=%s timeout_sec=%s",
                    self.session_id,
                    self._final_fragment_timeout_sec,
                )
            try:
                self._connection.close()
            except Exception:
                logger.exception("provider_close_failed session_id=%s", self.session_id)

        self._events.put(("drain", None))
        if self._event_thread is not None:
            self._event_thread.join()

        self._persist(terminal)
        if self._audio_bytes > 0 and self._audio_ref and self._on_audio_ready is not None:
            try:
                self._job_id = self._on_audio_ready(self.session_id, self._audio_ref)
            except Exception:
                logger.exception("reprocessing_enqueue_failed session_id=%s", self.session_id)

        duration_ms = int((time.monotonic() - started) * 1000)
        if terminal == "failed":
            code = self._error.code if self._error is not None else "SESSION_FAILED"
            detail = self._error.message if self._error is not None else ""
            audit.log_event(self._store, self.session_id, "SESSION_FAILED", code, detail, duration_ms)
        else:
            audit.log_event(
                self._store,
                self.session_id,
                "SESSION_STOPPED",
                "SESSION_STOP",
                f"fragments={len(self._buffer.final_fragments)} flags={len(self._flags)} audio_bytes={self._audio_bytes}",
                duration_ms,
            )
        self._set_state(terminal)
        self.broadcast.close()
        self._finished.set()

    def _drain_audio(self) -> None:
        if self._connection is None:
            return
        for _ in range(_MAX_DRAIN_FRAMES):
            try:
                frame = self._audio_source.read(0)
            except Exception:
                logger.exception("audio_drain_failed session_id=%s", self.session_id)
                return
            if not frame:
                return
            if not self._send_frame(frame):
                return

    def _release_audio_source(self) -> Optional[str]:
        try:
            return self._audio_source.close()
        except Exception:
            logger.exception("audio_source_close_failed session_id=%s", self.session_id)
            return None

    def _persist(self, terminal: SessionState) -> None:
        fragments = self._buffer.final_fragments
        self._store.save_transcript(
            self.session_id,
            raw_text=self._buffer.text(),
            fragments=fragments,
            status="live_complete" if terminal == "completed" else "failed",
        )
        saved = self._store.save_flags(self.session_id, self.flags, source="live")
        audit.log_event(
            self._store,
            self.session_id,
            "TRANSCRIPT_PERSISTED",
            "LIVE_TRANSCRIPT_SAVED",
            f"fragments={len(fragments)} new_flags={saved}",
        )
