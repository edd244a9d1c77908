from __future__ import annotations

"""
Versioned, load-time-validated detection rule table.

Design intent:
- Build the rule table once at import and never mutate it afterwards (safe to share across sessions).
- Fail fast on malformed rules at initialization instead of per detection call.
- Keep every rule explainable: phrase regex, severity, base confidence, optional metadata.
"""

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional, Sequence

from riskwatch.internal_core.contracts import FLAG_TYPES, SEVERITY_RANK
from riskwatch.internal_core.errors import PatternLibraryError

PATTERN_LIBRARY_VERSION = "2024.1"

NEGATION_PENALTY = 0.8

# A rule survives one negation penalty on a perfectly transcribed match.
DEFAULT_ACCEPTANCE_RATIO = NEGATION_PENALTY

NEGATION_RE = re.compile(r"\b(not|never|don't|didn't|wouldn't)\b")

HOPELESSNESS_TERMS: tuple[str, ...] = (
    "no hope",
    "pointless",
    "give up",
    "why bother",
    "nothing matters",
    "don't care anymore",
    "whatever happens",
)

INTENSIFIER_TERMS: tuple[str, ...] = (
    "getting worse",
    "can't take it",
    "too much",
    "overwhelming",
    "drowning",
    "suffocating",
    "breaking point",
    "losing it",
)

SENSITIVE_TOPIC_RE = re.compile(r"\b(trauma|abuse|death|suicide|assault)\b", re.IGNORECASE)

CORE_SUICIDE_TERM_RE = re.compile(r"\b(kill|die|suicide|dead)\b", re.IGNORECASE)


@dataclass(frozen=True)
class FlagPattern:
    flag_type: str
    regex: re.Pattern[str]
    severity: str
    min_confidence: float
    acceptance_floor: float
    metadata: Mapping[str, Any]


@dataclass(frozen=True)
class PatternLibrary:
    version: str
    patterns: Mapping[str, tuple[FlagPattern, ...]]

    def iter_patterns(self) -> Iterator[FlagPattern]:
        for flag_type in FLAG_TYPES:
            yield from self.patterns.get(flag_type, ())

    def for_type(self, flag_type: str) -> tuple[FlagPattern, ...]:
        return self.patterns.get(flag_type, ())

    def __len__(self) -> int:
        return sum(len(items) for items in self.patterns.values())


# (flag_type, regex, severity, min_confidence, metadata)
_DEFAULT_RULES: list[tuple[str, str, str, float, Optional[dict[str, Any]]]] = [
    (
        "suicide_risk",
        r"\b(kill\s+myself|end\s+it\s+all|not\s+be\s+here|better\s+off\s+dead|suicide|suicidal)\b",
        "critical",
        0.7,
        {"immediate_action": True},
    ),
    (
        "suicide_risk",
        r"\b(don't\s+want\s+to\s+live|wish\s+i\s+was\s+dead|can't\s+go\s+on|no\s+point\s+living)\b",
        "high",
        0.75,
        None,
    ),
    (
        "suicide_risk",
        r"\b(thought\s+about\s+dying|imagine\s+being\s+dead|wonder\s+what\s+it's\s+like\s+to\s+die)\b",
        "medium",
        0.8,
        None,
    ),
    (
        "suicide_risk",
        r"\b(giving\s+away\s+belongings|saying\s+goodbye|getting\s+affairs\s+in\s+order)\b",
        "high",
        0.85,
        {"indirect_indicator": True},
    ),
    (
        "self_harm",
        r"\b(cut\s+myself|cutting|burn\s+myself|hurt\s+myself|self[\s-]?harm)\b",
        "high",
        0.75,
        None,
    ),
    (
        "self_harm",
        r"\b(deserve\s+pain|punish\s+myself|feel\s+something|need\s+to\s+hurt)\b",
        "medium",
        0.8,
        None,
    ),
    (
        "substance_abuse",
        r"\b(overdose|od'd|using\s+again|relapsed|back\s+on\s+\w+)\b",
        "high",
        0.7,
        None,
    ),
    (
        "substance_abuse",
        r"\b(drinking\s+every\s+day|need\s+\w+\s+to\s+function|can't\s+stop\s+using)\b",
        "medium",
        0.75,
        None,
    ),
    (
        "substance_abuse",
        r"\b(blackout|don't\s+remember|lost\s+time|woke\s+up\s+and)\b",
        "medium",
        0.85,
        {"context_required": True},
    ),
    (
        "medication_noncompliance",
        r"\b(stopped\s+taking|haven't\s+taken|threw\s+away|flushed)\s+(?:my\s+)?(?:meds|medication|pills)\b",
        "high",
        0.8,
        None,
    ),
    (
        "medication_noncompliance",
        r"\b(don't\s+need|don't\s+like|hate)\s+(?:my\s+)?(?:meds|medication|pills)\b",
        "medium",
        0.85,
        None,
    ),
    (
        "psychosis_indicators",
        r"\b(voices\s+tell|hearing\s+voices|they're\s+watching|being\s+followed|conspiracy)\b",
        "high",
        0.7,
        None,
    ),
    (
        "psychosis_indicators",
        r"\b(special\s+powers|chosen\s+one|god\s+speaks\s+to\s+me|reading\s+my\s+thoughts)\b",
        "high",
        0.75,
        {"delusion_type": "grandiose"},
    ),
    (
        "psychosis_indicators",
        r"\b(not\s+real|in\s+the\s+walls|cameras\s+everywhere|poisoning\s+my\s+food)\b",
        "high",
        0.75,
        {"delusion_type": "paranoid"},
    ),
    (
        "trauma_disclosure",
        r"\b(raped|molested|abused|touched\s+me|forced\s+me)\b",
        "high",
        0.8,
        {"sensitive_disclosure": True},
    ),
    (
        "trauma_disclosure",
        r"\b(nightmares\s+about|flashbacks|can't\s+forget|keeps\s+coming\s+back)\b",
        "medium",
        0.85,
        {"ptsd_indicator": True},
    ),
    (
        "homicidal_ideation",
        r"\b(kill\s+(?:him|her|them)|hurt\s+(?:him|her|them)|make\s+them\s+pay)\b",
        "critical",
        0.75,
        {"immediate_action": True},
    ),
    (
        "severe_depression",
        r"\b(can't\s+get\s+out\s+of\s+bed|haven't\s+left\s+the\s+house|not\s+eating|lost\s+\d+\s+pounds)\b",
        "high",
        0.8,
        None,
    ),
    (
        "severe_depression",
        r"\b(worthless|hopeless|empty|numb|nothing\s+matters)\b",
        "medium",
        0.85,
        None,
    ),
    (
        "mania_indicators",
        r"\b(haven't\s+slept|don't\s+need\s+sleep|feel\s+invincible|so\s+much\s+energy)\b",
        "high",
        0.75,
        None,
    ),
    (
        "mania_indicators",
        r"\b(spending\s+spree|maxed\s+out|bought\s+everything|can't\s+stop\s+talking)\b",
        "medium",
        0.8,
        None,
    ),
    (
        "dissociation",
        r"\b(not\s+in\s+my\s+body|watching\s+myself|floating|disconnected|not\s+real)\b",
        "medium",
        0.8,
        None,
    ),
    (
        "dissociation",
        r"\b(lost\s+time|don't\s+remember\s+how\s+i\s+got|blank\s+spaces)\b",
        "high",
        0.75,
        None,
    ),
    (
        "eating_disorder",
        r"\b(purging|throwing\s+up|laxatives|starving\s+myself|binge\s+eating)\b",
        "high",
        0.75,
        None,
    ),
    (
        "eating_disorder",
        r"\b(hate\s+my\s+body|too\s+fat|need\s+to\s+lose|counting\s+calories|scared\s+to\s+eat)\b",
        "medium",
        0.8,
        None,
    ),
    (
        "significant_stressor",
        r"\b(lost\s+my\s+job|getting\s+divorced|death\s+in\s+the\s+family|evicted|diagnosed\s+with)\b",
        "medium",
        0.85,
        None,
    ),
]


def build_pattern_library(
    rules: Sequence[Sequence[Any]],
    *,
    version: str = PATTERN_LIBRARY_VERSION,
    acceptance_ratio: float = DEFAULT_ACCEPTANCE_RATIO,
) -> PatternLibrary:
    """
    Validate and freeze a rule table.

    Each rule is `(flag_type, regex, severity, min_confidence[, metadata])`.
    Raises PatternLibraryError on the first malformed rule.
    """
    if not str(version or "").strip():
        raise PatternLibraryError("pattern library version is required")
    if not 0.0 < float(acceptance_ratio) <= 1.0:
        raise PatternLibraryError(f"acceptance_ratio must be in (0, 1], got {acceptance_ratio!r}")

    grouped: dict[str, list[FlagPattern]] = {}
    for index, rule in enumerate(rules):
        if len(rule) not in (4, 5):
            raise PatternLibraryError(f"rule {index}: expected 4 or 5 fields, got {len(rule)}")
        flag_type, source, severity, min_confidence = rule[:4]
        metadata = rule[4] if len(rule) == 5 else None

        if flag_type not in FLAG_TYPES:
            raise PatternLibraryError(f"rule {index}: unknown flag type {flag_type!r}")
        if severity not in SEVERITY_RANK:
            raise PatternLibraryError(f"rule {index}: unknown severity {severity!r}")
        if isinstance(min_confidence, bool) or not isinstance(min_confidence, (int, float)):
            raise PatternLibraryError(f"rule {index}: min_confidence must be a number")
        if not 0.0 < float(min_confidence) <= 1.0:
            raise PatternLibraryError(f"rule {index}: min_confidence must be in (0, 1], got {min_confidence!r}")
        if metadata is not None and not isinstance(metadata, Mapping):
            raise PatternLibraryError(f"rule {index}: metadata must be a mapping")
        if not isinstance(source, str) or not source.strip():
            raise PatternLibraryError(f"rule {index}: regex must be a non-empty string")
        try:
            compiled = re.compile(source, re.IGNORECASE)
        except re.error as exc:
            raise PatternLibraryError(f"rule {index}: invalid regex {source!r}: {exc}") from exc

        grouped.setdefault(flag_type, []).append(
            FlagPattern(
                flag_type=flag_type,
                regex=compiled,
                severity=severity,
                min_confidence=float(min_confidence),
                acceptance_floor=round(float(min_confidence) * float(acceptance_ratio), 6),
                metadata=MappingProxyType(dict(metadata or {})),
            )
        )

    return PatternLibrary(
        version=str(version),
        patterns=MappingProxyType({key: tuple(items) for key, items in grouped.items()}),
    )


DEFAULT_PATTERN_LIBRARY = build_pattern_library(_DEFAULT_RULES)
