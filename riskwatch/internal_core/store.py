from __future__ import annotations

import datetime as _dt
import time
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional

from riskwatch.asr.models import TranscriptFragment

from .contracts import (
    AuditEvent,
    BatchJob,
    FlagSource,
    RiskFlag,
    StoredFlag,
    TranscriptRecord,
    TranscriptStatus,
)


def _now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


class InMemoryClinicalStore:
    """Durable-state layout kept in process: transcripts, flags, jobs and audit events.

    Flags are keyed by (session_id, flag.id); jobs by job id. Every read returns
    copies so callers never observe a record mid-mutation.
    """

    def __init__(self, ttl_seconds: int = 14400):
        self._ttl_seconds = ttl_seconds
        self._lock = RLock()
        self._transcripts: Dict[str, TranscriptRecord] = {}
        self._flags: Dict[tuple[str, str], StoredFlag] = {}
        self._jobs: Dict[str, BatchJob] = {}
        self._audit_events: Dict[str, List[AuditEvent]] = {}
        self._touched: Dict[str, float] = {}

    def _touch(self, session_id: str) -> None:
        self._touched[session_id] = time.time()

    # transcripts

    def save_transcript(
        self,
        session_id: str,
        *,
        raw_text: str,
        fragments: Iterable[TranscriptFragment],
        status: TranscriptStatus,
        summary: Optional[Dict[str, Any]] = None,
        medical_terms: Optional[List[str]] = None,
    ) -> TranscriptRecord:
        now = _now_iso()
        with self._lock:
            existing = self._transcripts.get(session_id)
            record = TranscriptRecord(
                session_id=session_id,
                raw_text=raw_text,
                fragments=list(fragments),
                processing_status=status,
                summary=dict(summary if summary is not None else (existing.summary if existing else {})),
                medical_terms=list(
                    medical_terms if medical_terms is not None else (existing.medical_terms if existing else [])
                ),
                created_at=existing.created_at if existing else now,
                updated_at=now,
                processed_at=now if status == "completed" else (existing.processed_at if existing else None),
            )
            self._transcripts[session_id] = record
            self._touch(session_id)
            return record.model_copy(deep=True)

    def set_transcript_status(self, session_id: str, status: TranscriptStatus) -> None:
        with self._lock:
            existing = self._transcripts.get(session_id)
            if existing is None:
                now = _now_iso()
                existing = TranscriptRecord(session_id=session_id, created_at=now, updated_at=now)
            self._transcripts[session_id] = existing.model_copy(
                update={"processing_status": status, "updated_at": _now_iso()}
            )
            self._touch(session_id)

    def get_transcript(self, session_id: str) -> Optional[TranscriptRecord]:
        with self._lock:
            record = self._transcripts.get(session_id)
            return record.model_copy(deep=True) if record is not None else None

    # flags

    def save_flags(self, session_id: str, flags: Iterable[RiskFlag], *, source: FlagSource) -> int:
        saved = 0
        now = _now_iso()
        with self._lock:
            for flag in flags:
                key = (session_id, flag.id)
                if key in self._flags:
                    continue
                self._flags[key] = StoredFlag(session_id=session_id, source=source, flag=flag, stored_at=now)
                saved += 1
            self._touch(session_id)
        return saved

    def mark_superseded(self, session_id: str, flag_id: str, superseded_by: str) -> None:
        with self._lock:
            stored = self._flags.get((session_id, flag_id))
            if stored is None:
                raise KeyError(f"Unknown flag: {session_id}/{flag_id}")
            stored.superseded_by = superseded_by
            self._touch(session_id)

    def list_flags(
        self,
        session_id: str,
        *,
        source: Optional[FlagSource] = None,
        include_superseded: bool = True,
    ) -> List[StoredFlag]:
        with self._lock:
            items = [
                stored.model_copy(deep=True)
                for (sid, _), stored in self._flags.items()
                if sid == session_id
                and (source is None or stored.source == source)
                and (include_superseded or stored.superseded_by is None)
            ]
        return items

    def authoritative_flags(self, session_id: str) -> List[RiskFlag]:
        return [item.flag for item in self.list_flags(session_id, include_superseded=False)]

    # jobs

    def put_job(self, job: BatchJob) -> None:
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
            self._touch(job.session_id)

    def update_job(self, job_id: str, **changes: Any) -> BatchJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(f"Unknown job_id: {job_id}")
            changes.setdefault("updated_at", _now_iso())
            updated = job.model_copy(update=changes)
            self._jobs[job_id] = updated
            self._touch(job.session_id)
            return updated.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[BatchJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def list_jobs(self, *, session_id: Optional[str] = None, status: Optional[str] = None) -> List[BatchJob]:
        with self._lock:
            jobs = [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if (session_id is None or job.session_id == session_id)
                and (status is None or job.status == status)
            ]
        jobs.sort(key=lambda item: item.created_at)
        return jobs

    # audit

    def append_audit_event(self, session_id: str, event: AuditEvent) -> None:
        with self._lock:
            self._audit_events.setdefault(session_id, []).append(event)
            self._touch(session_id)

    def list_audit_events(self, session_id: str) -> List[AuditEvent]:
        with self._lock:
            return list(self._audit_events.get(session_id, []))

    def destroy_session(self, session_id: str) -> None:
        with self._lock:
            self._transcripts.pop(session_id, None)
            self._audit_events.pop(session_id, None)
            self._touched.pop(session_id, None)
            for key in [key for key in self._flags if key[0] == session_id]:
                self._flags.pop(key, None)
            for job_id in [job_id for job_id, job in self._jobs.items() if job.session_id == session_id]:
                self._jobs.pop(job_id, None)

    def cleanup_expired_sessions(self, active_session_ids: Iterable[str] = ()) -> int:
        now = time.time()
        active = set(active_session_ids)
        with self._lock:
            expired = [
                session_id
                for session_id, touched in self._touched.items()
                if session_id not in active and touched + self._ttl_seconds <= now
            ]
        for session_id in expired:
            self.destroy_session(session_id)
        return len(expired)
