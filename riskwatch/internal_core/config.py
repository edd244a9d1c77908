from __future__ import annotations

import os
from dataclasses import dataclass


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _getenv_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class RiskwatchConfig:
    RISKWATCH_LOG_LEVEL: str
    RISKWATCH_SESSION_TTL_SECONDS: int
    RISKWATCH_SUBSCRIBER_BUFFER: int
    RISKWATCH_AUDIO_READ_TIMEOUT_SEC: float
    RISKWATCH_KEEPALIVE_INTERVAL_SEC: float
    RISKWATCH_FINAL_FRAGMENT_TIMEOUT_SEC: float
    RISKWATCH_QUEUE_CONCURRENCY: int
    RISKWATCH_QUEUE_MAX_ATTEMPTS: int
    RISKWATCH_QUEUE_BACKOFF_BASE_SEC: float
    RISKWATCH_BATCH_PROVIDER: str
    RISKWATCH_DEEPGRAM_API_KEY: str
    RISKWATCH_DEEPGRAM_BASE_URL: str
    RISKWATCH_DEEPGRAM_MODEL: str
    RISKWATCH_DEEPGRAM_TIMEOUT_SEC: float
    RISKWATCH_LANGUAGE: str
    RISKWATCH_MEDICAL_KEYWORDS: tuple[str, ...]
    RISKWATCH_CORS_ORIGINS: tuple[str, ...]
    RISKWATCH_TEST_INJECT_PROVIDER_FAIL: bool

    def deepgram_configured(self) -> bool:
        return bool(self.RISKWATCH_DEEPGRAM_API_KEY.strip())


def load_config() -> RiskwatchConfig:
    return RiskwatchConfig(
        RISKWATCH_LOG_LEVEL=_getenv_str("RISKWATCH_LOG_LEVEL", "INFO"),
        RISKWATCH_SESSION_TTL_SECONDS=_getenv_int("RISKWATCH_SESSION_TTL_SECONDS", 14400),
        RISKWATCH_SUBSCRIBER_BUFFER=_getenv_int("RISKWATCH_SUBSCRIBER_BUFFER", 256),
        RISKWATCH_AUDIO_READ_TIMEOUT_SEC=_getenv_float("RISKWATCH_AUDIO_READ_TIMEOUT_SEC", 0.25),
        RISKWATCH_KEEPALIVE_INTERVAL_SEC=_getenv_float("RISKWATCH_KEEPALIVE_INTERVAL_SEC", 8.0),
        RISKWATCH_FINAL_FRAGMENT_TIMEOUT_SEC=_getenv_float("RISKWATCH_FINAL_FRAGMENT_TIMEOUT_SEC", 5.0),
        RISKWATCH_QUEUE_CONCURRENCY=_getenv_int("RISKWATCH_QUEUE_CONCURRENCY", 2),
        RISKWATCH_QUEUE_MAX_ATTEMPTS=_getenv_int("RISKWATCH_QUEUE_MAX_ATTEMPTS", 3),
        RISKWATCH_QUEUE_BACKOFF_BASE_SEC=_getenv_float("RISKWATCH_QUEUE_BACKOFF_BASE_SEC", 1.0),
        RISKWATCH_BATCH_PROVIDER=_getenv_str("RISKWATCH_BATCH_PROVIDER", "mock"),
        RISKWATCH_DEEPGRAM_API_KEY=_getenv_str("RISKWATCH_DEEPGRAM_API_KEY", ""),
        RISKWATCH_DEEPGRAM_BASE_URL=_getenv_str(
            "RISKWATCH_DEEPGRAM_BASE_URL", "https://api.deepgram.com/v1"
        ),
        RISKWATCH_DEEPGRAM_MODEL=_getenv_str("RISKWATCH_DEEPGRAM_MODEL", "nova-2-medical"),
        RISKWATCH_DEEPGRAM_TIMEOUT_SEC=_getenv_float("RISKWATCH_DEEPGRAM_TIMEOUT_SEC", 300.0),
        RISKWATCH_LANGUAGE=_getenv_str("RISKWATCH_LANGUAGE", "en-US"),
        RISKWATCH_MEDICAL_KEYWORDS=_getenv_list("RISKWATCH_MEDICAL_KEYWORDS", ()),
        RISKWATCH_CORS_ORIGINS=_getenv_list("RISKWATCH_CORS_ORIGINS", ("*",)),
        RISKWATCH_TEST_INJECT_PROVIDER_FAIL=_getenv_bool("RISKWATCH_TEST_INJECT_PROVIDER_FAIL", False),
    )
