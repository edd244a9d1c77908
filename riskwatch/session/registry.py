from __future__ import annotations

"""
Hosting-side registry of recording sessions and the shared reprocessing queue.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from riskwatch.asr.deepgram import DeepgramBatchProvider
from riskwatch.asr.mock import MockAudioSource, MockBatchProvider, MockStreamingProvider
from riskwatch.asr.providers import AudioSource, BatchTranscriptionProvider, StreamingTranscriptionProvider
from riskwatch.batch.handlers import TranscriptProcessingHandler
from riskwatch.batch.queue import BatchReprocessingQueue
from riskwatch.internal_core.config import RiskwatchConfig, load_config
from riskwatch.internal_core.contracts import (
    TERMINAL_SESSION_STATES,
    JobStatusView,
    RiskFlag,
    SessionStatusView,
    StoredFlag,
)
from riskwatch.internal_core.errors import BatchJobError, SessionNotFoundError, SessionStateError
from riskwatch.internal_core.store import InMemoryClinicalStore
from riskwatch.live.broadcast import Subscription
from riskwatch.risk.detector import RiskDetector
from riskwatch.session.controller import CriticalFlagCallback, RecordingSessionController

logger = logging.getLogger(__name__)

AudioSourceFactory = Callable[[str], AudioSource]
StreamingProviderFactory = Callable[[str], StreamingTranscriptionProvider]

TRANSCRIPT_PROCESSING = "transcript_processing"


def build_batch_provider(cfg: RiskwatchConfig) -> BatchTranscriptionProvider:
    name = cfg.RISKWATCH_BATCH_PROVIDER.strip().lower()
    if name == "deepgram":
        if not cfg.deepgram_configured():
            raise RuntimeError("RISKWATCH_BATCH_PROVIDER=deepgram requires RISKWATCH_DEEPGRAM_API_KEY")
        return DeepgramBatchProvider(
            cfg.RISKWATCH_DEEPGRAM_API_KEY,
            base_url=cfg.RISKWATCH_DEEPGRAM_BASE_URL,
            model=cfg.RISKWATCH_DEEPGRAM_MODEL,
            language=cfg.RISKWATCH_LANGUAGE,
            timeout_sec=cfg.RISKWATCH_DEEPGRAM_TIMEOUT_SEC,
            keywords=cfg.RISKWATCH_MEDICAL_KEYWORDS,
        )
    if name != "mock":
        raise RuntimeError(f"Unsupported RISKWATCH_BATCH_PROVIDER: {cfg.RISKWATCH_BATCH_PROVIDER}")
    return MockBatchProvider()


def _default_audio_source(session_id: str) -> AudioSource:
    return MockAudioSource(audio_ref=f"mock://audio/{session_id}.wav")


class SessionRegistry:
    def __init__(
        self,
        store: InMemoryClinicalStore,
        reprocessing_queue: BatchReprocessingQueue,
        *,
        config: Optional[RiskwatchConfig] = None,
        detector: Optional[RiskDetector] = None,
        audio_source_factory: Optional[AudioSourceFactory] = None,
        streaming_provider_factory: Optional[StreamingProviderFactory] = None,
        on_critical_flag: Optional[CriticalFlagCallback] = None,
    ) -> None:
        self._cfg = config or load_config()
        self.store = store
        self.queue = reprocessing_queue
        self._detector = detector or RiskDetector()
        self._audio_source_factory = audio_source_factory or _default_audio_source
        self._streaming_provider_factory = streaming_provider_factory or self._default_streaming_provider
        self._on_critical_flag = on_critical_flag
        self._lock = threading.Lock()
        self._sessions: Dict[str, RecordingSessionController] = {}

    def _default_streaming_provider(self, session_id: str) -> StreamingTranscriptionProvider:
        return MockStreamingProvider(fail_on_connect=self._cfg.RISKWATCH_TEST_INJECT_PROVIDER_FAIL)

    def _controller(self, session_id: str) -> RecordingSessionController:
        with self._lock:
            controller = self._sessions.get(session_id)
        if controller is None:
            raise SessionNotFoundError(session_id)
        return controller

    def start_session(self, session_id: str, team_id: str = "") -> SessionStatusView:
        session_id = str(session_id or "").strip()
        if not session_id:
            raise ValueError("session_id is required")
        with self._lock:
            existing = self._sessions.get(session_id)
            if existing is not None:
                raise SessionStateError(session_id, existing.state, "start")

            def _on_audio_ready(sid: str, audio_ref: str) -> Optional[str]:
                return self.queue.enqueue(sid, team_id, TRANSCRIPT_PROCESSING, {"audio_ref": audio_ref})

            controller = RecordingSessionController(
                session_id,
                self._audio_source_factory(session_id),
                self._streaming_provider_factory(session_id),
                self.store,
                detector=self._detector,
                config=self._cfg,
                on_audio_ready=_on_audio_ready,
                on_critical_flag=self._on_critical_flag,
            )
            self._sessions[session_id] = controller
        # RecordingStartError propagates; the failed controller stays registered for status queries.
        controller.start()
        return controller.snapshot()

    def pause_session(self, session_id: str) -> SessionStatusView:
        controller = self._controller(session_id)
        controller.pause()
        return controller.snapshot()

    def resume_session(self, session_id: str) -> SessionStatusView:
        controller = self._controller(session_id)
        controller.resume()
        return controller.snapshot()

    def stop_session(self, session_id: str) -> SessionStatusView:
        return self._controller(session_id).stop()

    def session_status(self, session_id: str) -> SessionStatusView:
        return self._controller(session_id).snapshot()

    def subscribe(self, session_id: str) -> Subscription:
        return self._controller(session_id).broadcast.subscribe()

    def list_flags(self, session_id: str, *, include_superseded: bool = True) -> List[StoredFlag]:
        with self._lock:
            known = session_id in self._sessions
        flags = self.store.list_flags(session_id, include_superseded=include_superseded)
        if not known and not flags:
            raise SessionNotFoundError(session_id)
        return flags

    def live_flags(self, session_id: str) -> List[RiskFlag]:
        return self._controller(session_id).flags

    def enqueue_reprocessing(
        self,
        session_id: str,
        audio_ref: Optional[str] = None,
        team_id: str = "",
    ) -> str:
        if audio_ref is None:
            controller = self._controller(session_id)
            if controller.state not in TERMINAL_SESSION_STATES:
                raise SessionStateError(session_id, controller.state, "reprocess")
            audio_ref = controller.audio_ref
        if not audio_ref:
            raise BatchJobError("AUDIO_REF_MISSING", f"no recorded audio for session {session_id}")
        return self.queue.enqueue(session_id, team_id, TRANSCRIPT_PROCESSING, {"audio_ref": audio_ref})

    def get_job_status(self, job_id: str) -> JobStatusView:
        return self.queue.status(job_id)

    def jobs_for_session(self, session_id: str) -> List[JobStatusView]:
        return self.queue.jobs_for_session(session_id)

    def cleanup_expired(self) -> int:
        with self._lock:
            active = [sid for sid, ctl in self._sessions.items() if ctl.state not in TERMINAL_SESSION_STATES]
        removed = self.store.cleanup_expired_sessions(active_session_ids=active)
        if removed:
            with self._lock:
                stale = [sid for sid in self._sessions if sid not in active and self.store.get_transcript(sid) is None]
                for sid in stale:
                    self._sessions.pop(sid, None)
            logger.info("sessions_expired count=%s", removed)
        return removed

    def shutdown(self) -> None:
        with self._lock:
            controllers = list(self._sessions.values())
        for controller in controllers:
            if controller.state in ("recording", "paused"):
                try:
                    controller.stop()
                except SessionStateError:
                    logger.info("session_already_stopping session_id=%s", controller.session_id)
        self.queue.shutdown(wait=True)


def build_registry(
    cfg: Optional[RiskwatchConfig] = None,
    *,
    store: Optional[InMemoryClinicalStore] = None,
    batch_provider: Optional[BatchTranscriptionProvider] = None,
    audio_source_factory: Optional[AudioSourceFactory] = None,
    streaming_provider_factory: Optional[StreamingProviderFactory] = None,
) -> SessionRegistry:
    cfg = cfg or load_config()
    store = store or InMemoryClinicalStore(ttl_seconds=cfg.RISKWATCH_SESSION_TTL_SECONDS)
    detector = RiskDetector()
    handler = TranscriptProcessingHandler(
        store,
        batch_provider or build_batch_provider(cfg),
        detector,
        extra_medical_keywords=cfg.RISKWATCH_MEDICAL_KEYWORDS,
    )
    reprocessing_queue = BatchReprocessingQueue(
        store,
        {TRANSCRIPT_PROCESSING: handler},
        concurrency=cfg.RISKWATCH_QUEUE_CONCURRENCY,
        max_attempts=cfg.RISKWATCH_QUEUE_MAX_ATTEMPTS,
        backoff_base_sec=cfg.RISKWATCH_QUEUE_BACKOFF_BASE_SEC,
    )
    reprocessing_queue.start()
    return SessionRegistry(
        store,
        reprocessing_queue,
        config=cfg,
        detector=detector,
        audio_source_factory=audio_source_factory,
        streaming_provider_factory=streaming_provider_factory,
    )
