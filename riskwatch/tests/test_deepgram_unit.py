import json

import httpx
import pytest

from riskwatch.asr.deepgram import (
    DeepgramAPIError,
    DeepgramBatchProvider,
    DeepgramResponseError,
    parse_deepgram_response,
)


def _payload() -> dict:
    return {
        "metadata": {"request_id": "req-1"},
        "results": {
            "channels": [
                {
                    "alternatives": [
                        {
                            "transcript": "how are you feeling I feel hopeless",
                            "confidence": 0.93,
                            "words": [
                                {"word": "how", "start": 0.0, "end": 0.2, "confidence": 0.99, "speaker": 0},
                                {"word": "are", "start": 0.2, "end": 0.35, "confidence": 0.98, "speaker": 0},
                                {"word": "you", "start": 0.35, "end": 0.5, "confidence": 0.97, "speaker": 0},
                                {
                                    "word": "feeling",
                                    "punctuated_word": "feeling?",
                                    "start": 0.5,
                                    "end": 0.9,
                                    "confidence": 0.96,
                                    "speaker": 0,
                                },
                                {"word": "i", "punctuated_word": "I", "start": 1.5, "end": 1.6, "confidence": 0.9, "speaker": 1},
                                {"word": "feel", "start": 1.6, "end": 1.9, "confidence": 0.9, "speaker": 1},
                                {
                                    "word": "hopeless",
                                    "punctuated_word": "hopeless.",
                                    "start": 1.9,
                                    "end": 2.45,
                                    "confidence": 0.88,
                                    "speaker": 1,
                                },
                            ],
                        }
                    ]
                }
            ]
        },
    }


def test_parse_converts_seconds_to_ms_and_groups_speaker_turns() -> None:
    transcript = parse_deepgram_response(_payload())

    assert transcript.text == "how are you feeling I feel hopeless"
    assert transcript.confidence == pytest.approx(0.93)
    assert len(transcript.words) == 7
    assert transcript.words[3].start_ms == 500
    assert transcript.words[3].end_ms == 900
    assert transcript.words[3].display_text == "feeling?"
    assert transcript.words[6].end_ms == 2450
    assert [fragment.speaker for fragment in transcript.fragments] == [0, 1]
    assert transcript.fragments[0].text == "how are you feeling?"
    assert transcript.fragments[1].text == "I feel hopeless."
    assert transcript.fragments[1].start_offset_ms == 1500


def test_parse_prefers_utterances_when_present() -> None:
    payload = _payload()
    payload["results"]["utterances"] = [
        {"speaker": 1, "transcript": "I feel hopeless.", "start": 1.5, "end": 2.45, "confidence": 0.9, "words": []}
    ]

    transcript = parse_deepgram_response(payload)

    assert len(transcript.fragments) == 1
    assert transcript.fragments[0].speaker == 1
    assert transcript.fragments[0].end_offset_ms == 2450


@pytest.mark.parametrize("payload", [{}, {"results": {}}, {"results": {"channels": [{"alternatives": []}]}}, []])
def test_parse_rejects_malformed_payloads(payload) -> None:
    with pytest.raises(DeepgramResponseError):
        parse_deepgram_response(payload)


def test_provider_posts_audio_url_with_medical_options() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_payload())

    client = httpx.Client(transport=httpx.MockTransport(_handler))
    provider = DeepgramBatchProvider(
        "secret-key",
        base_url="https://deepgram.test/v1/",
        keywords=["sertraline", "  "],
        client=client,
    )

    transcript = provider.transcribe("https://storage.test/audio/s1.wav")

    assert provider.name() == "deepgram"
    assert transcript.words[-1].word == "hopeless"
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/listen"
    assert request.headers["Authorization"] == "Token secret-key"
    params = request.url.params
    assert params["model"] == "nova-2-medical"
    assert params["diarize"] == "true"
    assert params["punctuate"] == "true"
    assert params["utterances"] == "true"
    assert params["numerals"] == "true"
    assert params["language"] == "en-US"
    assert params.get_list("keywords") == ["sertraline"]
    assert json.loads(request.read()) == {"url": "https://storage.test/audio/s1.wav"}


def test_provider_raises_on_http_error() -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(401, text="bad token")))
    provider = DeepgramBatchProvider("wrong", client=client)

    with pytest.raises(DeepgramAPIError) as exc_info:
        provider.transcribe("https://storage.test/audio/s1.wav")
    assert exc_info.value.status_code == 401
    assert "bad token" in str(exc_info.value)


def test_provider_raises_on_non_json_body() -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>")))
    provider = DeepgramBatchProvider("key", client=client)

    with pytest.raises(DeepgramResponseError):
        provider.transcribe("https://storage.test/audio/s1.wav")
