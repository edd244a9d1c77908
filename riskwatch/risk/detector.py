from __future__ import annotations

"""
Detect candidate clinical risk flags in transcript text and word timings.

Design intent:
- Stay a pure function of (transcript, words, prior flags, pattern library); no I/O, no shared state.
- Run keyword, contextual, behavioral and escalation passes, then dedupe and prioritize.
- Degrade to "no flags" on malformed input; a screening pass must never break a live session.
"""

import logging
import re
import uuid
from typing import Any, Mapping, Optional, Sequence

from pydantic import ValidationError

from riskwatch.asr.models import WordTiming
from riskwatch.internal_core.contracts import SEVERITY_RANK, RiskFlag
from riskwatch.internal_core.errors import DetectionInputError
from riskwatch.risk.patterns import (
    CORE_SUICIDE_TERM_RE,
    DEFAULT_PATTERN_LIBRARY,
    HOPELESSNESS_TERMS,
    INTENSIFIER_TERMS,
    NEGATION_PENALTY,
    NEGATION_RE,
    SENSITIVE_TOPIC_RE,
    FlagPattern,
    PatternLibrary,
)

logger = logging.getLogger(__name__)

CONTEXT_WINDOW_WORDS = 50
PAUSE_THRESHOLD_MS = 5000
PAUSE_WINDOW_WORDS = 10
MIN_WORDS_FOR_SPEECH_RATE = 10
RAPID_SPEECH_WPM = 180
PRESSURED_SPEECH_WPM = 220
ESCALATION_MIN_TERMS = 2
DEDUP_PREFIX_CHARS = 50

_FLOAT_TOLERANCE = 1e-9

_WORD_NORMALIZE_RE = re.compile(r"[^\w']+")


def _new_id() -> str:
    return str(uuid.uuid4())


def _normalize_token(token: str) -> str:
    return _WORD_NORMALIZE_RE.sub("", str(token or "").lower())


def _coerce_words(words: Optional[Sequence[Any]]) -> list[WordTiming]:
    if words is None:
        return []
    if isinstance(words, (str, bytes)):
        raise DetectionInputError("words must be a sequence of word timings")
    out: list[WordTiming] = []
    for index, item in enumerate(words):
        if isinstance(item, WordTiming):
            out.append(item)
            continue
        if not isinstance(item, Mapping):
            raise DetectionInputError(f"word {index}: expected WordTiming or mapping, got {type(item).__name__}")
        try:
            out.append(WordTiming.model_validate(item))
        except ValidationError as exc:
            raise DetectionInputError(f"word {index}: {exc.errors()[0].get('msg', 'invalid')}") from exc
    return out


def _coerce_prior_flags(prior_flags: Optional[Sequence[Any]]) -> list[RiskFlag]:
    if not prior_flags:
        return []
    out: list[RiskFlag] = []
    for index, item in enumerate(prior_flags):
        if isinstance(item, RiskFlag):
            out.append(item)
            continue
        try:
            out.append(RiskFlag.model_validate(item))
        except ValidationError as exc:
            raise DetectionInputError(f"prior flag {index} is malformed") from exc
    return out


def speech_rate_wpm(words: Sequence[WordTiming]) -> int:
    if len(words) < MIN_WORDS_FOR_SPEECH_RATE:
        return 0
    duration_ms = words[-1].end_ms - words[0].start_ms
    if duration_ms <= 0:
        return 0
    return int(round(len(words) / (duration_ms / 60000.0)))


class RiskDetector:
    """Stateless detector bound to one immutable pattern library."""

    def __init__(self, library: PatternLibrary = DEFAULT_PATTERN_LIBRARY) -> None:
        self._library = library

    @property
    def library_version(self) -> str:
        return self._library.version

    def detect(
        self,
        transcript: str,
        words: Optional[Sequence[Any]] = None,
        prior_flags: Optional[Sequence[Any]] = None,
    ) -> list[RiskFlag]:
        try:
            if not isinstance(transcript, str):
                raise DetectionInputError(f"transcript must be str, got {type(transcript).__name__}")
            word_list = _coerce_words(words)
            priors = _coerce_prior_flags(prior_flags)
            return self._detect(transcript, word_list, priors)
        except DetectionInputError as exc:
            logger.warning("detection_input_skipped code=%s detail=%s", exc.code, exc.message)
            return []
        except Exception:
            logger.exception("detection_failed library_version=%s", self._library.version)
            return []

    def _detect(self, transcript: str, words: list[WordTiming], prior_flags: list[RiskFlag]) -> list[RiskFlag]:
        if not transcript.strip() and not words:
            return []
        flags: list[RiskFlag] = []
        flags.extend(self._keyword_pass(transcript, words))
        flags.extend(self._contextual_pass(transcript, words))
        flags.extend(self._behavioral_pass(words))
        flags.extend(self._escalation_pass(transcript, words, prior_flags))
        return deduplicate_and_prioritize(flags)

    def _keyword_pass(self, transcript: str, words: list[WordTiming]) -> list[RiskFlag]:
        lowered = transcript.lower()
        tokens = transcript.split()
        flags: list[RiskFlag] = []
        for pattern in self._library.iter_patterns():
            for match in pattern.regex.finditer(lowered):
                flag = self._flag_from_match(pattern, match, transcript, tokens, words)
                if flag is not None:
                    flags.append(flag)
        return flags

    def _flag_from_match(
        self,
        pattern: FlagPattern,
        match: re.Match[str],
        transcript: str,
        tokens: list[str],
        words: list[WordTiming],
    ) -> Optional[RiskFlag]:
        start_token = len(transcript[: match.start()].split())
        end_token = max(start_token + 1, len(transcript[: match.end()].split()))
        lo = max(0, start_token - CONTEXT_WINDOW_WORDS)
        hi = min(len(tokens), start_token + CONTEXT_WINDOW_WORDS)
        context = " ".join(tokens[lo:hi])

        matched_words = _matched_words(words, tokens, start_token, end_token)
        confidence = pattern.min_confidence
        if matched_words:
            confidence *= sum(w.confidence for w in matched_words) / len(matched_words)
        negated = bool(NEGATION_RE.search(context.lower()))
        if negated:
            confidence *= NEGATION_PENALTY
        confidence = min(1.0, confidence)
        if confidence < pattern.acceptance_floor - _FLOAT_TOLERANCE:
            return None

        anchor = matched_words[0] if matched_words else (words[0] if words else None)
        speakers = {w.speaker for w in matched_words if w.speaker is not None}
        metadata = dict(pattern.metadata)
        metadata["pattern_severity"] = pattern.severity
        metadata["min_confidence"] = pattern.min_confidence
        if negated:
            metadata["negation_in_context"] = True
        return RiskFlag(
            id=_new_id(),
            type=pattern.flag_type,
            severity=pattern.severity,
            confidence=confidence,
            matched_text=match.group(0),
            context=context,
            session_relative_timestamp_ms=anchor.start_ms if anchor is not None else 0,
            speaker_id=speakers.pop() if len(speakers) == 1 else None,
            metadata=metadata,
        )

    def _contextual_pass(self, transcript: str, words: list[WordTiming]) -> list[RiskFlag]:
        lowered = transcript.lower()
        timestamp = words[0].start_ms if words else 0
        flags: list[RiskFlag] = []

        hopeless = [term for term in HOPELESSNESS_TERMS if term in lowered]
        if len(hopeless) >= 3:
            flags.append(
                RiskFlag(
                    id=_new_id(),
                    type="severe_depression",
                    severity="high",
                    confidence=min(0.9, 0.7 + len(hopeless) * 0.05),
                    matched_text=", ".join(hopeless),
                    context=transcript,
                    session_relative_timestamp_ms=timestamp,
                    metadata={
                        "pattern": "multiple_hopelessness_indicators",
                        "indicator_count": len(hopeless),
                    },
                )
            )

        intensifiers = [term for term in INTENSIFIER_TERMS if term in lowered]
        if len(intensifiers) >= 2:
            flags.append(
                RiskFlag(
                    id=_new_id(),
                    type="significant_stressor",
                    severity="high" if len(intensifiers) >= 3 else "medium",
                    confidence=0.85,
                    matched_text=", ".join(intensifiers),
                    context=transcript,
                    session_relative_timestamp_ms=timestamp,
                    metadata={
                        "pattern": "emotional_escalation",
                        "intensity": len(intensifiers),
                    },
                )
            )
        return flags

    def _behavioral_pass(self, words: list[WordTiming]) -> list[RiskFlag]:
        flags: list[RiskFlag] = []
        for i in range(1, len(words)):
            pause_ms = words[i].start_ms - words[i - 1].end_ms
            if pause_ms <= PAUSE_THRESHOLD_MS:
                continue
            window = words[max(0, i - PAUSE_WINDOW_WORDS) : min(len(words), i + PAUSE_WINDOW_WORDS)]
            surrounding = " ".join(w.display_text for w in window)
            if not SENSITIVE_TOPIC_RE.search(surrounding):
                continue
            flags.append(
                RiskFlag(
                    id=_new_id(),
                    type="dissociation",
                    severity="low",
                    confidence=0.7,
                    matched_text=f"[{pause_ms / 1000.0:.1f}s pause]",
                    context=surrounding,
                    session_relative_timestamp_ms=words[i - 1].end_ms,
                    speaker_id=words[i - 1].speaker,
                    metadata={
                        "pause_duration_ms": pause_ms,
                        "following_sensitive_content": True,
                    },
                )
            )

        wpm = speech_rate_wpm(words)
        if wpm > RAPID_SPEECH_WPM:
            flags.append(
                RiskFlag(
                    id=_new_id(),
                    type="mania_indicators",
                    severity="high" if wpm > PRESSURED_SPEECH_WPM else "medium",
                    confidence=0.75,
                    matched_text=f"Rapid speech detected: {wpm} words/min",
                    context=" ".join(w.display_text for w in words),
                    session_relative_timestamp_ms=words[0].start_ms,
                    metadata={"speech_rate_wpm": wpm, "pattern": "pressured_speech"},
                )
            )
        return flags

    def _escalation_pass(
        self,
        transcript: str,
        words: list[WordTiming],
        prior_flags: list[RiskFlag],
    ) -> list[RiskFlag]:
        prior_suicide = [item for item in prior_flags if item.type == "suicide_risk"]
        if not prior_suicide:
            return []
        hits = len(CORE_SUICIDE_TERM_RE.findall(transcript))
        if hits <= ESCALATION_MIN_TERMS:
            return []
        return [
            RiskFlag(
                id=_new_id(),
                type="suicide_risk",
                severity="critical",
                confidence=0.9,
                matched_text="Escalating suicidal ideation detected",
                context=transcript,
                session_relative_timestamp_ms=words[0].start_ms if words else 0,
                metadata={
                    "pattern": "escalation",
                    "previous_flags": len(prior_suicide),
                    "current_keywords": hits,
                },
            )
        ]


def _matched_words(
    words: list[WordTiming],
    tokens: list[str],
    start_token: int,
    end_token: int,
) -> list[WordTiming]:
    if not words or start_token >= len(tokens):
        return []
    if len(words) == len(tokens):
        return words[start_token:end_token]

    # Words and transcript tokens diverge (punctuation, smart formatting): align on normalized text.
    target = [_normalize_token(tok) for tok in tokens[start_token:end_token]]
    target = [tok for tok in target if tok]
    if not target:
        return []
    normalized = [_normalize_token(w.word) for w in words]
    best: Optional[int] = None
    for i in range(0, len(normalized) - len(target) + 1):
        if normalized[i : i + len(target)] == target:
            if best is None or abs(i - start_token) < abs(best - start_token):
                best = i
    if best is None:
        return []
    return words[best : best + len(target)]


def deduplicate_and_prioritize(flags: Sequence[RiskFlag]) -> list[RiskFlag]:
    ordered = sorted(
        flags,
        key=lambda item: (-SEVERITY_RANK[item.severity], -item.confidence),
    )
    unique: dict[tuple[str, str], RiskFlag] = {}
    for flag in ordered:
        key = (flag.type, flag.matched_text[:DEDUP_PREFIX_CHARS])
        if key not in unique:
            unique[key] = flag
    return list(unique.values())


_DEFAULT_DETECTOR = RiskDetector()


def detect(
    transcript: str,
    words: Optional[Sequence[Any]] = None,
    prior_flags: Optional[Sequence[Any]] = None,
) -> list[RiskFlag]:
    return _DEFAULT_DETECTOR.detect(transcript, words, prior_flags)
