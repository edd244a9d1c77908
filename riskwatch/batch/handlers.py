from __future__ import annotations

"""
Job handlers executed by the reprocessing queue.

Design intent:
- Re-run detection over the complete batch transcript of a finished session.
- Merge with the current flags: each live flag, and each batch flag from an
  earlier run, is either kept or superseded by the new batch flag that shares
  its dedup key; nothing is deleted.
- Persist the authoritative transcript record with summary and medical terms.
"""

import logging
import time
from typing import Any, Dict, Optional, Sequence

from riskwatch.asr.providers import BatchTranscriptionProvider
from riskwatch.internal_core.contracts import BatchJob, RiskFlag, StoredFlag
from riskwatch.internal_core.errors import BatchJobError
from riskwatch.internal_core.store import InMemoryClinicalStore
from riskwatch.risk.detector import RiskDetector
from riskwatch.risk.summary import build_session_summary, extract_medical_terms

logger = logging.getLogger(__name__)


def merge_live_and_batch_flags(
    existing: Sequence[StoredFlag],
    batch: Sequence[RiskFlag],
) -> tuple[list[RiskFlag], list[tuple[str, str]]]:
    """Return (batch flags annotated with what they supersede, [(old_id, batch_id), ...]).

    `existing` is every unsuperseded flag of the session: live flags and the
    batch flags of earlier runs.
    """
    batch_by_key: dict[tuple[str, str], RiskFlag] = {}
    for flag in batch:
        batch_by_key.setdefault(flag.dedup_key(), flag)

    superseded_ids: dict[str, list[str]] = {}
    pairs: list[tuple[str, str]] = []
    for stored in existing:
        replacement = batch_by_key.get(stored.flag.dedup_key())
        if replacement is None:
            continue
        superseded_ids.setdefault(replacement.id, []).append(stored.flag.id)
        pairs.append((stored.flag.id, replacement.id))

    annotated: list[RiskFlag] = []
    for flag in batch:
        ids = superseded_ids.get(flag.id)
        if ids:
            metadata = dict(flag.metadata)
            metadata["supersedes"] = ids
            flag = flag.model_copy(update={"metadata": metadata})
        annotated.append(flag)
    return annotated, pairs


class TranscriptProcessingHandler:
    def __init__(
        self,
        store: InMemoryClinicalStore,
        batch_provider: BatchTranscriptionProvider,
        detector: Optional[RiskDetector] = None,
        *,
        extra_medical_keywords: Sequence[str] = (),
    ) -> None:
        self._store = store
        self._provider = batch_provider
        self._detector = detector or RiskDetector()
        self._extra_medical_keywords = tuple(extra_medical_keywords)

    def __call__(self, job: BatchJob) -> Dict[str, Any]:
        session_id = job.session_id
        audio_ref = str(job.input.get("audio_ref", "") or "").strip()
        if not audio_ref:
            raise BatchJobError("AUDIO_REF_MISSING", "job input has no audio_ref", job.id)

        self._store.set_transcript_status(session_id, "processing")
        started = time.monotonic()
        try:
            transcript = self._provider.transcribe(audio_ref)
        except Exception:
            self._store.set_transcript_status(session_id, "failed")
            raise

        batch_flags = self._detector.detect(transcript.text, transcript.words, prior_flags=[])
        current = self._store.list_flags(session_id, include_superseded=False)
        live_ids = {stored.flag.id for stored in current if stored.source == "live"}
        annotated, superseded = merge_live_and_batch_flags(current, batch_flags)
        self._store.save_flags(session_id, annotated, source="batch")
        for old_id, batch_id in superseded:
            self._store.mark_superseded(session_id, old_id, batch_id)
        live_superseded = {old_id for old_id, _ in superseded if old_id in live_ids}
        batch_superseded = len(superseded) - len(live_superseded)

        authoritative = self._store.authoritative_flags(session_id)
        summary = build_session_summary(transcript.text, transcript.words, authoritative)
        medical_terms = extract_medical_terms(transcript.text, self._extra_medical_keywords)
        existing = self._store.get_transcript(session_id)
        fragments = transcript.fragments or (existing.fragments if existing is not None else [])
        self._store.save_transcript(
            session_id,
            raw_text=transcript.text,
            fragments=fragments,
            status="completed",
            summary=summary,
            medical_terms=medical_terms,
        )
        logger.info(
            "transcript_reprocessed session_id=%s provider=%s batch_flags=%s live_superseded=%s "
            "batch_superseded=%s elapsed_ms=%s",
            session_id,
            self._provider.name(),
            len(annotated),
            len(live_superseded),
            batch_superseded,
            int((time.monotonic() - started) * 1000),
        )
        return {
            "provider": self._provider.name(),
            "batch_flags": len(annotated),
            "live_kept": len(live_ids) - len(live_superseded),
            "live_superseded": len(live_superseded),
            "batch_superseded": batch_superseded,
            "authoritative_flags": len(authoritative),
            "highest_severity": summary["highest_severity"],
            "medical_terms": medical_terms,
            "word_count": summary["word_count"],
        }
