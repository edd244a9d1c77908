import dataclasses
import time

import pytest
from fastapi.testclient import TestClient

from riskwatch.api.main import app
from riskwatch.asr.mock import MockAudioSource, MockBatchProvider, MockStreamingProvider
from riskwatch.asr.models import TranscriptFragment, WordTiming
from riskwatch.asr.providers import BatchTranscript
from riskwatch.internal_core.config import load_config
from riskwatch.session.registry import build_registry

FRAME = b"\x00\x01" * 160
SPOKEN = "I want to end it all"


def _cfg(**overrides):
    values = {
        "RISKWATCH_AUDIO_READ_TIMEOUT_SEC": 0.01,
        "RISKWATCH_KEEPALIVE_INTERVAL_SEC": 0.05,
        "RISKWATCH_FINAL_FRAGMENT_TIMEOUT_SEC": 1.0,
        "RISKWATCH_QUEUE_BACKOFF_BASE_SEC": 0.01,
    }
    values.update(overrides)
    return dataclasses.replace(load_config(), **values)


def _batch_transcript() -> BatchTranscript:
    words = [
        WordTiming(word=token, start_ms=i * 400, end_ms=i * 400 + 350, confidence=0.97, speaker=1)
        for i, token in enumerate(SPOKEN.split())
    ]
    return BatchTranscript(text=SPOKEN, words=words, confidence=0.97)


class _Env:
    def __init__(self, *, scripted_streaming: bool = True, **cfg_overrides) -> None:
        self.sources: dict[str, MockAudioSource] = {}
        self.registry = build_registry(
            _cfg(**cfg_overrides),
            batch_provider=MockBatchProvider(_batch_transcript()),
            audio_source_factory=self._source,
            streaming_provider_factory=self._streaming if scripted_streaming else None,
        )

    def _streaming(self, session_id: str) -> MockStreamingProvider:
        return MockStreamingProvider(
            {1: [TranscriptFragment(speaker=1, text=SPOKEN, start_offset_ms=0, end_offset_ms=2000)]}
        )

    def _source(self, session_id: str) -> MockAudioSource:
        source = MockAudioSource(audio_ref=f"mock://audio/{session_id}.wav")
        self.sources[session_id] = source
        return source


@pytest.fixture
def env():
    created = _Env()
    app.state.registry = created.registry
    try:
        yield created
    finally:
        created.registry.shutdown()
        delattr(app.state, "registry")


def _wait_for_job(client: TestClient, job_id: str, status: str = "completed", timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    body = {}
    while time.monotonic() < deadline:
        body = client.get(f"/jobs/{job_id}").json()
        if body.get("status") == status:
            return body
        time.sleep(0.02)
    return body


def test_healthz() -> None:
    client = TestClient(app)
    assert client.get("/healthz").json() == {"status": "ok"}


def test_session_lifecycle_endpoints(env) -> None:
    client = TestClient(app)

    started = client.post("/sessions/s-life/start", json={"team_id": "team-a"})
    assert started.status_code == 200
    assert started.json()["state"] == "recording"
    assert client.post("/sessions/s-life/start").status_code == 409

    assert client.post("/sessions/s-life/pause").json()["state"] == "paused"
    conflict = client.post("/sessions/s-life/pause")
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["code"] == "SESSION_STATE_CONFLICT"
    assert client.post("/sessions/s-life/resume").json()["state"] == "recording"

    stopped = client.post("/sessions/s-life/stop")
    assert stopped.status_code == 200
    assert stopped.json()["state"] == "completed"
    assert stopped.json()["job_id"] is None
    assert client.get("/sessions/s-life/status").json()["state"] == "completed"
    assert client.get("/sessions/s-life/transcript").json()["processing_status"] == "live_complete"


def test_unknown_session_and_job_return_404(env) -> None:
    client = TestClient(app)
    for response in (
        client.post("/sessions/missing/pause"),
        client.post("/sessions/missing/stop"),
        client.get("/sessions/missing/status"),
        client.get("/sessions/missing/flags"),
        client.post("/sessions/missing/reprocess", json={}),
        client.get("/jobs/missing"),
        client.get("/sessions/missing/transcript"),
    ):
        assert response.status_code == 404


def test_stop_enqueues_reprocessing_and_batch_supersedes_live_flag(env) -> None:
    client = TestClient(app)
    client.post("/sessions/s-flow/start", json={"team_id": "team-a"})
    env.sources["s-flow"].push(FRAME)
    stopped = client.post("/sessions/s-flow/stop").json()

    job_id = stopped["job_id"]
    assert job_id
    job = _wait_for_job(client, job_id)
    assert job["status"] == "completed"
    assert job["attempts"] == 1
    assert job["result"]["live_superseded"] == 1

    flags = client.get("/sessions/s-flow/flags", params={"include_superseded": "false"}).json()["flags"]
    assert len(flags) == 1
    assert flags[0]["source"] == "batch"
    assert flags[0]["flag"]["severity"] == "critical"
    assert flags[0]["flag"]["confidence"] == pytest.approx(0.7 * 0.97)
    assert len(flags[0]["flag"]["metadata"]["supersedes"]) == 1

    all_flags = client.get("/sessions/s-flow/flags").json()["flags"]
    assert {item["source"] for item in all_flags} == {"live", "batch"}

    transcript = client.get("/sessions/s-flow/transcript").json()
    assert transcript["processing_status"] == "completed"
    assert transcript["summary"]["highest_severity"] == "critical"

    again = client.post("/sessions/s-flow/reprocess", json={})
    assert again.status_code == 200
    assert again.json()["job_id"] != job_id
    jobs = client.get("/sessions/s-flow/jobs").json()["jobs"]
    assert [item["job_id"] for item in jobs][0] == job_id


def test_reprocess_while_recording_is_a_conflict(env) -> None:
    client = TestClient(app)
    client.post("/sessions/s-busy/start")
    response = client.post("/sessions/s-busy/reprocess", json={})
    assert response.status_code == 409
    client.post("/sessions/s-busy/stop")


def test_reprocess_without_audio_is_a_conflict(env) -> None:
    client = TestClient(app)
    client.post("/sessions/s-quiet/start")
    client.post("/sessions/s-quiet/stop")
    response = client.post("/sessions/s-quiet/reprocess", json={})
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "AUDIO_REF_MISSING"


def test_reprocess_with_explicit_audio_ref(env) -> None:
    client = TestClient(app)
    response = client.post("/sessions/s-upload/reprocess", json={"audio_ref": "mock://audio/upload.wav"})
    assert response.status_code == 200
    job = _wait_for_job(client, response.json()["job_id"])
    assert job["status"] == "completed"
    assert client.get("/sessions/s-upload/flags").status_code == 200


def test_provider_start_failure_returns_500_and_status_failed() -> None:
    created = _Env(scripted_streaming=False, RISKWATCH_TEST_INJECT_PROVIDER_FAIL=True)
    app.state.registry = created.registry
    client = TestClient(app)
    try:
        response = client.post("/sessions/s-fail/start")
        assert response.status_code == 500
        assert response.json()["detail"]["code"] == "PROVIDER_CONNECT_FAILED"
        assert client.get("/sessions/s-fail/status").json()["state"] == "failed"
    finally:
        created.registry.shutdown()
        delattr(app.state, "registry")


def test_live_websocket_streams_fragments_and_flags(env) -> None:
    client = TestClient(app)
    client.post("/sessions/s-ws/start")

    with client.websocket_connect("/ws/sessions/s-ws/live") as websocket:
        deadline = time.monotonic() + 3.0
        while env.registry.session_status("s-ws").subscribers < 1 and time.monotonic() < deadline:
            time.sleep(0.01)
        env.sources["s-ws"].push(FRAME)

        fragment = websocket.receive_json()
        assert fragment["type"] == "fragment"
        assert fragment["payload"]["text"] == SPOKEN
        flag = websocket.receive_json()
        assert flag["type"] == "flag"
        assert flag["payload"]["severity"] == "critical"
        assert flag["seq"] > fragment["seq"]

        env.registry.stop_session("s-ws")
        kinds = []
        while True:
            message = websocket.receive_json()
            kinds.append(message["type"])
            if message["type"] == "end":
                break
        assert kinds[-2:] == ["state", "end"]


def test_live_websocket_unknown_session_reports_error(env) -> None:
    client = TestClient(app)
    with client.websocket_connect("/ws/sessions/missing/live") as websocket:
        message = websocket.receive_json()
    assert message["type"] == "error"
    assert message["detail"]["code"] == "SESSION_NOT_FOUND"
