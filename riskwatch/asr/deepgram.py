from __future__ import annotations

"""
HTTP client for pre-recorded (batch) transcription of a complete session recording.

Design intent:
- Request a medical-model, diarized, word-timed transcript for an accessible audio URL.
- Convert the provider payload into riskwatch word/fragment contracts (seconds -> milliseconds).
- Raise typed errors so the batch queue can retry transient failures.
"""

import logging
from time import perf_counter
from typing import Any, Optional, Sequence

import httpx

from riskwatch.asr.models import TranscriptFragment, WordTiming
from riskwatch.asr.providers import BatchTranscript, BatchTranscriptionProvider

logger = logging.getLogger(__name__)


class DeepgramAPIError(RuntimeError):
    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Deepgram API error {status_code}: {message}")


class DeepgramResponseError(ValueError):
    pass


def _ms(value: Any) -> int:
    try:
        return max(0, int(round(float(value) * 1000.0)))
    except (TypeError, ValueError):
        return 0


def _confidence(value: Any) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


def _speaker(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_word(item: dict[str, Any]) -> WordTiming:
    start_ms = _ms(item.get("start"))
    return WordTiming(
        word=str(item.get("word", "") or ""),
        punctuated_word=item.get("punctuated_word") or None,
        start_ms=start_ms,
        end_ms=max(start_ms, _ms(item.get("end"))),
        confidence=_confidence(item.get("confidence", 1.0)),
        speaker=_speaker(item.get("speaker")),
    )


def _fragments_from_words(words: Sequence[WordTiming]) -> list[TranscriptFragment]:
    fragments: list[TranscriptFragment] = []
    run: list[WordTiming] = []

    def _flush() -> None:
        if not run:
            return
        fragments.append(
            TranscriptFragment(
                speaker=run[0].speaker or 0,
                text=" ".join(w.display_text for w in run),
                start_offset_ms=run[0].start_ms,
                end_offset_ms=max(run[0].start_ms, run[-1].end_ms),
                confidence=sum(w.confidence for w in run) / len(run),
                is_final=True,
                words=list(run),
            )
        )

    for word in words:
        if run and word.speaker != run[-1].speaker:
            _flush()
            run = []
        run.append(word)
    _flush()
    return fragments


def parse_deepgram_response(payload: dict[str, Any]) -> BatchTranscript:
    results = payload.get("results") if isinstance(payload, dict) else None
    channels = (results or {}).get("channels") or []
    if not channels or not (channels[0].get("alternatives") or []):
        raise DeepgramResponseError("Invalid Deepgram response format")

    alternative = channels[0]["alternatives"][0]
    words = [_parse_word(item) for item in alternative.get("words") or [] if isinstance(item, dict)]

    fragments: list[TranscriptFragment] = []
    for utt in (results or {}).get("utterances") or []:
        utt_words = [_parse_word(item) for item in utt.get("words") or [] if isinstance(item, dict)]
        start_ms = _ms(utt.get("start"))
        fragments.append(
            TranscriptFragment(
                speaker=_speaker(utt.get("speaker")) or 0,
                text=str(utt.get("transcript", "") or ""),
                start_offset_ms=start_ms,
                end_offset_ms=max(start_ms, _ms(utt.get("end"))),
                confidence=_confidence(utt.get("confidence", 1.0)),
                is_final=True,
                words=utt_words,
            )
        )
    if not fragments:
        fragments = _fragments_from_words(words)

    return BatchTranscript(
        text=str(alternative.get("transcript", "") or ""),
        words=words,
        fragments=fragments,
        confidence=_confidence(alternative.get("confidence", 0.0)),
        raw=dict(results or {}),
    )


class DeepgramBatchProvider(BatchTranscriptionProvider):
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.deepgram.com/v1",
        model: str = "nova-2-medical",
        language: str = "en-US",
        timeout_sec: float = 300.0,
        keywords: Sequence[str] = (),
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._language = language
        self._keywords = [str(item) for item in keywords if str(item).strip()]
        self._client = client or httpx.Client(timeout=timeout_sec)

    def name(self) -> str:
        return "deepgram"

    def _params(self) -> list[tuple[str, str]]:
        params = [
            ("model", self._model),
            ("language", self._language),
            ("diarize", "true"),
            ("punctuate", "true"),
            ("paragraphs", "true"),
            ("utterances", "true"),
            ("numerals", "true"),
            ("smart_format", "true"),
        ]
        params.extend(("keywords", item) for item in self._keywords)
        return params

    def transcribe(self, audio_ref: str) -> BatchTranscript:
        started = perf_counter()
        response = self._client.post(
            f"{self._base_url}/listen",
            params=self._params(),
            json={"url": audio_ref},
            headers={"Authorization": f"Token {self._api_key}"},
        )
        if response.status_code >= 400:
            raise DeepgramAPIError(response.status_code, response.text[:300])
        try:
            payload = response.json()
        except ValueError as exc:
            raise DeepgramResponseError("Deepgram response is not JSON") from exc
        transcript = parse_deepgram_response(payload)
        logger.info(
            "batch_transcription_done provider=deepgram model=%s words=%s elapsed_ms=%s",
            self._model,
            len(transcript.words),
            int((perf_counter() - started) * 1000),
        )
        return transcript

    def close(self) -> None:
        self._client.close()
