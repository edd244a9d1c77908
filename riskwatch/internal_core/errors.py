from __future__ import annotations

from typing import Optional


class RiskwatchError(RuntimeError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class PatternLibraryError(RiskwatchError):
    def __init__(self, message: str):
        super().__init__("PATTERN_LIBRARY_INVALID", message)


class DetectionInputError(RiskwatchError):
    def __init__(self, message: str):
        super().__init__("DETECTION_INPUT_INVALID", message)


class RecordingStartError(RiskwatchError):
    def __init__(self, code: str, message: str, session_id: str):
        super().__init__(code, message)
        self.session_id = session_id


class ProviderStreamError(RiskwatchError):
    def __init__(self, code: str, message: str, provider_name: str = ""):
        super().__init__(code, message)
        self.provider_name = provider_name


class SessionStateError(RiskwatchError):
    def __init__(self, session_id: str, state: str, action: str):
        super().__init__(
            "SESSION_STATE_CONFLICT",
            f"cannot {action} session {session_id} in state {state}",
        )
        self.session_id = session_id
        self.state = state
        self.action = action


class SessionNotFoundError(RiskwatchError, KeyError):
    def __init__(self, session_id: str):
        RiskwatchError.__init__(self, "SESSION_NOT_FOUND", f"Unknown session_id: {session_id}")
        self.session_id = session_id

    def __str__(self) -> str:
        return self.message


class BatchJobError(RiskwatchError):
    def __init__(self, code: str, message: str, job_id: Optional[str] = None):
        super().__init__(code, message)
        self.job_id = job_id


class UnsupportedJobTypeError(RiskwatchError, ValueError):
    def __init__(self, job_type: str):
        RiskwatchError.__init__(self, "JOB_TYPE_UNSUPPORTED", f"No handler registered for job type: {job_type}")
        self.job_type = job_type
