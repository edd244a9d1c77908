import pytest

from riskwatch.asr.models import WordTiming
from riskwatch.internal_core.contracts import RiskFlag
from riskwatch.risk.detector import RiskDetector, deduplicate_and_prioritize, detect, speech_rate_wpm
from riskwatch.risk.patterns import build_pattern_library


def _words(text: str, *, confidence: float = 1.0, step_ms: int = 400, speaker: int | None = 1) -> list[WordTiming]:
    return [
        WordTiming(
            word=token.strip(",.!?"),
            punctuated_word=token,
            start_ms=i * step_ms,
            end_ms=i * step_ms + step_ms - 50,
            confidence=confidence,
            speaker=speaker,
        )
        for i, token in enumerate(text.split())
    ]


def _flag(flag_type: str = "suicide_risk", severity: str = "high", confidence: float = 0.8, text: str = "x") -> RiskFlag:
    return RiskFlag(
        id=f"{flag_type}-{severity}-{confidence}-{text}",
        type=flag_type,
        severity=severity,
        confidence=confidence,
        matched_text=text,
    )


def test_end_it_all_yields_critical_suicide_flag_scaled_by_word_confidence() -> None:
    transcript = "I just want to end it all, I can't go on"
    flags = detect(transcript, _words(transcript, confidence=0.95), [])

    critical = [f for f in flags if f.type == "suicide_risk" and f.severity == "critical"]
    assert len(critical) == 1
    assert critical[0].confidence == pytest.approx(0.665)
    assert critical[0].matched_text == "end it all"
    assert critical[0].metadata["immediate_action"] is True
    assert critical[0].session_relative_timestamp_ms == 4 * 400
    assert critical[0].speaker_id == 1

    high = [f for f in flags if f.type == "suicide_risk" and f.severity == "high"]
    assert high and high[0].confidence == pytest.approx(0.7125)
    assert flags[0] is critical[0]


def test_detect_is_deterministic_apart_from_flag_ids() -> None:
    transcript = "I just want to end it all, I can't go on"
    words = _words(transcript, confidence=0.95)

    def _shape(flags):
        return [(f.type, f.severity, round(f.confidence, 6), f.matched_text) for f in flags]

    assert _shape(detect(transcript, words, [])) == _shape(detect(transcript, words, []))


def test_negation_in_context_penalizes_or_drops_flag() -> None:
    base = detect("I want to end it all", _words("I want to end it all"), [])
    negated = detect("I would never want to end it all", _words("I would never want to end it all"), [])

    base_flag = next(f for f in base if f.type == "suicide_risk")
    negated_flags = [f for f in negated if f.type == "suicide_risk" and f.matched_text == "end it all"]
    assert base_flag.confidence == pytest.approx(0.7)
    assert len(negated_flags) == 1
    assert negated_flags[0].confidence <= 0.8 * base_flag.confidence + 1e-9
    assert negated_flags[0].metadata["negation_in_context"] is True


def test_negation_with_low_word_confidence_drops_below_acceptance_floor() -> None:
    transcript = "I would never want to end it all"
    flags = detect(transcript, _words(transcript, confidence=0.9), [])
    assert not [f for f in flags if f.matched_text == "end it all"]


def test_escalation_with_prior_suicide_flag_adds_critical_flag() -> None:
    transcript = "sometimes I think I should die, suicide feels close, I could kill the pain, better dead"
    prior = [_flag("suicide_risk", "high", 0.75, "can't go on")]

    flags = detect(transcript, _words(transcript), prior)

    escalation = [f for f in flags if f.metadata.get("pattern") == "escalation"]
    assert len(escalation) == 1
    assert escalation[0].severity == "critical"
    assert escalation[0].confidence == pytest.approx(0.9)
    assert escalation[0].metadata["previous_flags"] == 1
    assert escalation[0].metadata["current_keywords"] >= 3


def test_escalation_requires_prior_suicide_flag() -> None:
    transcript = "sometimes I think I should die, suicide feels close, I could kill the pain, better dead"
    flags = detect(transcript, _words(transcript), [_flag("self_harm")])
    assert not [f for f in flags if f.metadata.get("pattern") == "escalation"]


def test_rapid_speech_above_220_wpm_is_high_severity_mania() -> None:
    words = [WordTiming(word="la", start_ms=i * 250, end_ms=i * 250 + 200) for i in range(20)]
    assert speech_rate_wpm(words) > 220

    flags = detect(" ".join(w.word for w in words), words, [])

    mania = [f for f in flags if f.type == "mania_indicators"]
    assert len(mania) == 1
    assert mania[0].severity == "high"
    assert mania[0].metadata["speech_rate_wpm"] == speech_rate_wpm(words)


def test_moderately_rapid_speech_is_medium_severity_mania() -> None:
    words = [WordTiming(word="la", start_ms=i * 300, end_ms=i * 300 + 250) for i in range(20)]
    assert 180 < speech_rate_wpm(words) <= 220

    flags = detect(" ".join(w.word for w in words), words, [])
    assert [f.severity for f in flags if f.type == "mania_indicators"] == ["medium"]


def test_speech_rate_needs_minimum_word_count() -> None:
    words = [WordTiming(word="la", start_ms=i * 100, end_ms=i * 100 + 80) for i in range(5)]
    assert speech_rate_wpm(words) == 0
    assert detect("la la la la la", words, []) == []


def test_long_pause_near_sensitive_topic_flags_dissociation() -> None:
    words = _words("we talked about the trauma last week")
    shifted = [
        w if i < 5 else w.model_copy(update={"start_ms": w.start_ms + 6000, "end_ms": w.end_ms + 6000})
        for i, w in enumerate(words)
    ]

    flags = detect("we talked about the trauma last week", shifted, [])

    dissociation = [f for f in flags if f.type == "dissociation"]
    assert len(dissociation) == 1
    assert dissociation[0].severity == "low"
    assert dissociation[0].metadata["pause_duration_ms"] > 5000
    assert dissociation[0].session_relative_timestamp_ms == shifted[4].end_ms


def test_long_pause_without_sensitive_topic_is_ignored() -> None:
    words = [WordTiming(word="hello", start_ms=0, end_ms=300), WordTiming(word="there", start_ms=9000, end_ms=9300)]
    assert detect("hello there", words, []) == []


def test_hopelessness_cluster_flags_severe_depression() -> None:
    transcript = "there is no hope, it is pointless, why bother, I just give up"
    flags = detect(transcript, [], [])
    depression = [f for f in flags if f.metadata.get("pattern") == "multiple_hopelessness_indicators"]
    assert len(depression) == 1
    assert depression[0].severity == "high"
    assert depression[0].confidence == pytest.approx(0.9)


def test_intensifiers_flag_stressor_with_count_based_severity() -> None:
    two = detect("it keeps getting worse and it is too much", [], [])
    three = detect("it keeps getting worse, it is too much, I am drowning", [], [])
    assert [f.severity for f in two if f.type == "significant_stressor"] == ["medium"]
    assert [f.severity for f in three if f.type == "significant_stressor"] == ["high"]


def test_duplicate_phrases_collapse_to_one_flag() -> None:
    flags = detect("suicide, I keep thinking about suicide", [], [])
    assert len([f for f in flags if f.matched_text == "suicide"]) == 1


def test_deduplicate_and_prioritize_orders_by_severity_then_confidence() -> None:
    flags = [
        _flag("self_harm", "medium", 0.9, "a"),
        _flag("suicide_risk", "critical", 0.6, "b"),
        _flag("self_harm", "high", 0.7, "c"),
        _flag("self_harm", "high", 0.8, "d"),
        _flag("suicide_risk", "critical", 0.5, "b"),
    ]
    ordered = deduplicate_and_prioritize(flags)
    assert [(f.severity, f.matched_text) for f in ordered] == [
        ("critical", "b"),
        ("high", "d"),
        ("high", "c"),
        ("medium", "a"),
    ]
    assert ordered[0].confidence == pytest.approx(0.6)


def test_empty_and_benign_input_yield_no_flags() -> None:
    assert detect("", [], []) == []
    assert detect("   ", None, None) == []
    assert detect("the weather was lovely on our walk today", _words("the weather was lovely on our walk today"), []) == []


def test_empty_words_still_run_text_passes() -> None:
    flags = detect("I want to end it all", [], [])
    critical = [f for f in flags if f.severity == "critical"]
    assert critical and critical[0].confidence == pytest.approx(0.7)
    assert critical[0].session_relative_timestamp_ms == 0


def test_unaligned_match_ignores_unrelated_word_confidence() -> None:
    words = [
        WordTiming(word="hello", start_ms=100, end_ms=400, confidence=0.5),
        WordTiming(word="there", start_ms=500, end_ms=800, confidence=0.5),
    ]
    flags = detect("I want to end it all", words, [])
    critical = [f for f in flags if f.severity == "critical"]
    assert critical and critical[0].confidence == pytest.approx(0.7)
    assert critical[0].session_relative_timestamp_ms == 100


@pytest.mark.parametrize(
    "transcript, words",
    [
        (None, []),
        ("I want to end it all", "not a list"),
        ("I want to end it all", [{"word": "end", "start_ms": 500, "end_ms": 100}]),
        ("I want to end it all", [42]),
    ],
)
def test_malformed_input_is_absorbed_into_empty_result(transcript, words) -> None:
    assert detect(transcript, words, []) == []


def test_malformed_prior_flags_are_absorbed() -> None:
    assert detect("I want to end it all", [], [{"type": "unknown"}]) == []


def test_detector_accepts_word_mappings() -> None:
    words = [w.model_dump() for w in _words("I want to end it all", confidence=0.5)]
    flags = detect("I want to end it all", words, [])
    assert next(f for f in flags if f.severity == "critical").confidence == pytest.approx(0.35)


def test_detector_uses_injected_library() -> None:
    library = build_pattern_library([("eating_disorder", r"\bcalories\b", "low", 0.5)], version="custom")
    detector = RiskDetector(library)
    flags = detector.detect("I am counting calories and want to end it all", [], [])
    assert detector.library_version == "custom"
    assert [f.type for f in flags] == ["eating_disorder"]
