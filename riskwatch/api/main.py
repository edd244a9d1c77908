from __future__ import annotations

"""
HTTP/WebSocket surface for riskwatch.

Design intent:
- Keep API orchestration thin and typed.
- Delegate lifecycle, detection and reprocessing to the session registry.
- Map domain errors onto HTTP status codes in one place.
"""

import logging
from typing import Any, NoReturn, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from riskwatch.internal_core.config import load_config
from riskwatch.internal_core.contracts import JobStatusView, SessionStatusView, StoredFlag, TranscriptRecord
from riskwatch.internal_core.errors import (
    BatchJobError,
    RecordingStartError,
    RiskwatchError,
    SessionNotFoundError,
    SessionStateError,
    UnsupportedJobTypeError,
)
from riskwatch.session.registry import SessionRegistry, build_registry


class StartSessionRequest(BaseModel):
    team_id: str = ""


class ReprocessRequest(BaseModel):
    audio_ref: Optional[str] = None
    team_id: str = ""


class ReprocessResponse(BaseModel):
    session_id: str
    job_id: str


class SessionFlagsResponse(BaseModel):
    session_id: str
    flags: list[StoredFlag] = Field(default_factory=list)


class SessionJobsResponse(BaseModel):
    session_id: str
    jobs: list[JobStatusView] = Field(default_factory=list)


_cfg = load_config()
logging.basicConfig(level=getattr(logging, _cfg.RISKWATCH_LOG_LEVEL.upper(), logging.INFO))

app = FastAPI(title="riskwatch service")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(_cfg.RISKWATCH_CORS_ORIGINS),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_registry() -> SessionRegistry:
    existing = getattr(app.state, "registry", None)
    if isinstance(existing, SessionRegistry):
        return existing
    created = build_registry(_cfg)
    setattr(app.state, "registry", created)
    return created


def _error_detail(exc: RiskwatchError) -> dict[str, Any]:
    return {"code": exc.code, "message": exc.message}


def _raise_http(exc: Exception) -> NoReturn:
    if isinstance(exc, SessionNotFoundError):
        raise HTTPException(status_code=404, detail=_error_detail(exc)) from exc
    if isinstance(exc, SessionStateError):
        raise HTTPException(status_code=409, detail=_error_detail(exc)) from exc
    if isinstance(exc, UnsupportedJobTypeError):
        raise HTTPException(status_code=400, detail=_error_detail(exc)) from exc
    if isinstance(exc, BatchJobError):
        status_code = 404 if exc.code == "JOB_NOT_FOUND" else 409
        raise HTTPException(status_code=status_code, detail=_error_detail(exc)) from exc
    if isinstance(exc, RecordingStartError):
        logger.error("session_start_failed session_id=%s code=%s", exc.session_id, exc.code)
        raise HTTPException(status_code=500, detail=_error_detail(exc)) from exc
    if isinstance(exc, ValueError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.exception("request_failed error=%s", type(exc).__name__)
    raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/sessions/{session_id}/start", response_model=SessionStatusView)
def start_session(session_id: str, payload: Optional[StartSessionRequest] = None) -> SessionStatusView:
    try:
        return _get_registry().start_session(session_id, team_id=(payload.team_id if payload else ""))
    except Exception as exc:
        _raise_http(exc)


@app.post("/sessions/{session_id}/pause", response_model=SessionStatusView)
def pause_session(session_id: str) -> SessionStatusView:
    try:
        return _get_registry().pause_session(session_id)
    except Exception as exc:
        _raise_http(exc)


@app.post("/sessions/{session_id}/resume", response_model=SessionStatusView)
def resume_session(session_id: str) -> SessionStatusView:
    try:
        return _get_registry().resume_session(session_id)
    except Exception as exc:
        _raise_http(exc)


@app.post("/sessions/{session_id}/stop", response_model=SessionStatusView)
def stop_session(session_id: str) -> SessionStatusView:
    try:
        return _get_registry().stop_session(session_id)
    except Exception as exc:
        _raise_http(exc)


@app.get("/sessions/{session_id}/status", response_model=SessionStatusView)
def session_status(session_id: str) -> SessionStatusView:
    try:
        return _get_registry().session_status(session_id)
    except Exception as exc:
        _raise_http(exc)


@app.get("/sessions/{session_id}/flags", response_model=SessionFlagsResponse)
def session_flags(
    session_id: str,
    include_superseded: bool = Query(default=True),
) -> SessionFlagsResponse:
    try:
        flags = _get_registry().list_flags(session_id, include_superseded=include_superseded)
    except Exception as exc:
        _raise_http(exc)
    return SessionFlagsResponse(session_id=session_id, flags=flags)


@app.get("/sessions/{session_id}/transcript", response_model=TranscriptRecord)
def session_transcript(session_id: str) -> TranscriptRecord:
    record = _get_registry().store.get_transcript(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Transcript not found: {session_id}")
    return record


@app.post("/sessions/{session_id}/reprocess", response_model=ReprocessResponse)
def reprocess_session(session_id: str, payload: Optional[ReprocessRequest] = None) -> ReprocessResponse:
    payload = payload or ReprocessRequest()
    try:
        job_id = _get_registry().enqueue_reprocessing(session_id, audio_ref=payload.audio_ref, team_id=payload.team_id)
    except Exception as exc:
        _raise_http(exc)
    return ReprocessResponse(session_id=session_id, job_id=job_id)


@app.get("/sessions/{session_id}/jobs", response_model=SessionJobsResponse)
def session_jobs(session_id: str) -> SessionJobsResponse:
    return SessionJobsResponse(session_id=session_id, jobs=_get_registry().jobs_for_session(session_id))


@app.get("/jobs/{job_id}", response_model=JobStatusView)
def job_status(job_id: str) -> JobStatusView:
    try:
        return _get_registry().get_job_status(job_id)
    except Exception as exc:
        _raise_http(exc)


@app.websocket("/ws/sessions/{session_id}/live")
async def live_session_ws(websocket: WebSocket, session_id: str) -> None:
    await websocket.accept()
    try:
        subscription = _get_registry().subscribe(session_id)
    except SessionNotFoundError as exc:
        await websocket.send_json({"type": "error", "detail": _error_detail(exc)})
        await websocket.close(code=1008)
        return

    try:
        while True:
            event = await run_in_threadpool(subscription.get, 0.5)
            if event is None:
                if subscription.closed:
                    break
                continue
            message = event.to_dict()
            message["lagging"] = subscription.lagging
            await websocket.send_json(message)
        await websocket.send_json({"type": "end", "session_id": session_id})
        await websocket.close()
    except WebSocketDisconnect:
        logger.info("live_subscriber_disconnected session_id=%s", session_id)
    finally:
        subscription.close()
