"""
Error taxonomy of the certification flow
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"        # camera/location refused, fix in settings
    SENSOR_UNAVAILABLE = "sensor_unavailable"      # no camera at all
    SENSOR_ERROR = "sensor_error"
    CAPTURE_TIMEOUT = "capture_timeout"
    SCORE_TOO_LOW = "score_too_low"
    ORACLE_FAILURE = "oracle_failure"
    NEEDS_REVERIFICATION = "needs_reverification"  # identity document must be re-verified elsewhere
    PERSISTENCE_FAILURE = "persistence_failure"    # identity proven, only the write must be redone
    NOT_ALLOWED = "not_allowed"


@dataclass(frozen=True)
class FlowError:
    kind: ErrorKind
    message: str
    # State a retry resumes at; None when only cancel is offered
    resume_state: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.resume_state is not None


class FlowStateError(Exception):
    """An operation was invoked from a state that does not allow it."""


class CaptureInFlightError(FlowStateError):
    """A face match is already pending for this registration."""


class BackendError(Exception):
    """Transport or server failure talking to the certification backend."""
