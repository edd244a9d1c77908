import datetime as _dt

import pytest

from riskwatch.asr.mock import MockBatchProvider
from riskwatch.asr.models import TranscriptFragment, WordTiming
from riskwatch.asr.providers import BatchTranscript
from riskwatch.batch.handlers import TranscriptProcessingHandler, merge_live_and_batch_flags
from riskwatch.internal_core.contracts import BatchJob, RiskFlag
from riskwatch.internal_core.errors import BatchJobError
from riskwatch.internal_core.store import InMemoryClinicalStore

TRANSCRIPT = "I just want to end it all. I stopped taking my medication last month and my depression is worse."


def _job(audio_ref: str = "mock://audio/s1.wav") -> BatchJob:
    now = _dt.datetime.now(_dt.timezone.utc).isoformat()
    return BatchJob(
        id="job-1",
        session_id="s1",
        type="transcript_processing",
        input={"audio_ref": audio_ref},
        created_at=now,
        updated_at=now,
    )


def _batch_transcript() -> BatchTranscript:
    words = [
        WordTiming(word=token.strip(".").lower(), punctuated_word=token, start_ms=i * 400, end_ms=i * 400 + 350,
                   confidence=0.98, speaker=0 if i < 7 else 1)
        for i, token in enumerate(TRANSCRIPT.split())
    ]
    return BatchTranscript(
        text=TRANSCRIPT,
        words=words,
        fragments=[TranscriptFragment(speaker=0, text=TRANSCRIPT, start_offset_ms=0, end_offset_ms=words[-1].end_ms)],
        confidence=0.97,
    )


def _live_flag(flag_id: str, flag_type: str, severity: str, matched_text: str, confidence: float = 0.7) -> RiskFlag:
    return RiskFlag(id=flag_id, type=flag_type, severity=severity, confidence=confidence, matched_text=matched_text)


def test_batch_pass_supersedes_matching_live_flags_and_keeps_the_rest() -> None:
    store = InMemoryClinicalStore()
    live_suicide = _live_flag("live-1", "suicide_risk", "critical", "end it all")
    live_psychosis = _live_flag("live-2", "psychosis_indicators", "high", "hearing voices")
    store.save_flags("s1", [live_suicide, live_psychosis], source="live")
    provider = MockBatchProvider(_batch_transcript())

    result = TranscriptProcessingHandler(store, provider)(_job())

    assert provider.calls == ["mock://audio/s1.wav"]
    assert result["live_superseded"] == 1
    assert result["live_kept"] == 1

    stored = {item.flag.id: item for item in store.list_flags("s1")}
    assert stored["live-1"].superseded_by is not None
    assert stored["live-2"].superseded_by is None
    replacement = stored[stored["live-1"].superseded_by]
    assert replacement.source == "batch"
    assert replacement.flag.metadata["supersedes"] == ["live-1"]
    assert replacement.flag.confidence == pytest.approx(0.7 * 0.98)

    authoritative_ids = {flag.id for flag in store.authoritative_flags("s1")}
    assert "live-2" in authoritative_ids
    assert "live-1" not in authoritative_ids
    assert {flag.type for flag in store.authoritative_flags("s1")} >= {
        "suicide_risk",
        "psychosis_indicators",
        "medication_noncompliance",
    }


def test_every_live_flag_remains_represented_after_merge() -> None:
    store = InMemoryClinicalStore()
    live = [
        _live_flag("live-1", "suicide_risk", "critical", "end it all"),
        _live_flag("live-2", "eating_disorder", "high", "purging"),
    ]
    store.save_flags("s1", live, source="live")

    TranscriptProcessingHandler(store, MockBatchProvider(_batch_transcript()))(_job())

    authoritative = store.authoritative_flags("s1")
    keys = {flag.dedup_key() for flag in authoritative}
    for flag in live:
        assert flag.dedup_key() in keys


def test_transcript_record_has_summary_and_medical_terms() -> None:
    store = InMemoryClinicalStore()

    TranscriptProcessingHandler(store, MockBatchProvider(_batch_transcript()), extra_medical_keywords=["month"])(_job())

    record = store.get_transcript("s1")
    assert record.processing_status == "completed"
    assert record.processed_at is not None
    assert record.raw_text == TRANSCRIPT
    assert record.fragments and record.fragments[0].text == TRANSCRIPT
    assert "medication" in record.medical_terms
    assert "depression" in record.medical_terms
    assert "month" in record.medical_terms
    assert record.summary["highest_severity"] == "critical"
    assert record.summary["requires_review"] is True
    assert record.summary["speaker_word_counts"] == {"0": 7, "1": 12}


def test_missing_audio_ref_is_a_job_error() -> None:
    with pytest.raises(BatchJobError) as exc_info:
        TranscriptProcessingHandler(InMemoryClinicalStore(), MockBatchProvider())(_job(audio_ref=""))
    assert exc_info.value.code == "AUDIO_REF_MISSING"


def test_provider_failure_marks_transcript_failed_and_propagates() -> None:
    store = InMemoryClinicalStore()
    handler = TranscriptProcessingHandler(store, MockBatchProvider(_batch_transcript(), failures=1))

    with pytest.raises(ConnectionError):
        handler(_job())
    assert store.get_transcript("s1").processing_status == "failed"

    handler(_job())
    assert store.get_transcript("s1").processing_status == "completed"


def test_merge_annotates_batch_flag_that_replaces_several_live_flags() -> None:
    store = InMemoryClinicalStore()
    store.save_flags(
        "s1",
        [
            _live_flag("a", "suicide_risk", "critical", "suicide"),
            _live_flag("b", "suicide_risk", "critical", "suicide", confidence=0.6),
        ],
        source="live",
    )
    batch = [_live_flag("z", "suicide_risk", "critical", "suicide", confidence=0.69)]

    annotated, pairs = merge_live_and_batch_flags(store.list_flags("s1"), batch)

    assert sorted(pairs) == [("a", "z"), ("b", "z")]
    assert sorted(annotated[0].metadata["supersedes"]) == ["a", "b"]


def test_rerun_supersedes_earlier_batch_flags_instead_of_duplicating_them() -> None:
    store = InMemoryClinicalStore()
    store.save_flags("s1", [_live_flag("live-1", "suicide_risk", "critical", "end it all")], source="live")
    handler = TranscriptProcessingHandler(store, MockBatchProvider(_batch_transcript()))

    first = handler(_job())
    first_ids = {flag.id for flag in store.authoritative_flags("s1")}
    second = handler(_job())
    authoritative = store.authoritative_flags("s1")

    assert len(authoritative) == len(first_ids)
    keys = [flag.dedup_key() for flag in authoritative]
    assert len(keys) == len(set(keys))
    assert not first_ids & {flag.id for flag in authoritative}
    assert second["live_superseded"] == 0
    assert second["batch_superseded"] == len(first_ids)
    assert second["authoritative_flags"] == first["authoritative_flags"]

    replacement = next(flag for flag in authoritative if flag.matched_text == "end it all")
    assert replacement.metadata["supersedes"][0] in first_ids
    assert store.get_transcript("s1").summary["flag_count"] == len(first_ids)
