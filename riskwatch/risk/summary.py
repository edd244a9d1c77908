from __future__ import annotations

from collections import Counter
from typing import Any, Iterable, Sequence

from riskwatch.asr.models import WordTiming
from riskwatch.internal_core.contracts import SEVERITY_RANK, RiskFlag

MEDICAL_KEYWORDS: tuple[str, ...] = (
    "medication",
    "prescription",
    "diagnosis",
    "symptom",
    "treatment",
    "therapy",
    "depression",
    "anxiety",
    "bipolar",
    "schizophrenia",
    "ptsd",
    "trauma",
    "psychosis",
    "disorder",
    "syndrome",
    "antidepressant",
    "antipsychotic",
    "mood stabilizer",
    "benzodiazepine",
    "ssri",
    "snri",
    "cognitive",
    "behavioral",
    "psychotherapy",
    "counseling",
    "assessment",
    "evaluation",
    "screening",
)


def extract_medical_terms(text: str, extra_keywords: Iterable[str] = ()) -> list[str]:
    lowered = " ".join((text or "").lower().split())
    tokens = lowered.split()
    found: list[str] = []
    for term in list(MEDICAL_KEYWORDS) + [str(item).strip().lower() for item in extra_keywords]:
        if not term or term in found:
            continue
        if " " in term:
            hit = term in lowered
        else:
            hit = any(term in token for token in tokens)
        if hit:
            found.append(term)
    return found


def build_session_summary(
    transcript: str,
    words: Sequence[WordTiming],
    flags: Sequence[RiskFlag],
) -> dict[str, Any]:
    """Deterministic post-session digest stored next to the authoritative flag set."""
    by_type = Counter(item.type for item in flags)
    by_severity = Counter(item.severity for item in flags)
    highest = max((item.severity for item in flags), key=lambda s: SEVERITY_RANK[s], default=None)
    speaker_words = Counter(str(w.speaker) for w in words if w.speaker is not None)
    duration_ms = (words[-1].end_ms - words[0].start_ms) if words else 0
    return {
        "word_count": len(transcript.split()),
        "duration_ms": max(0, int(duration_ms)),
        "flag_count": len(flags),
        "flags_by_type": dict(sorted(by_type.items())),
        "flags_by_severity": {key: by_severity[key] for key in SEVERITY_RANK if by_severity[key]},
        "highest_severity": highest,
        "requires_review": highest in {"high", "critical"},
        "speaker_word_counts": dict(sorted(speaker_words.items())),
    }
