"""
Certification flow - client-side orchestration of one registration's
presence certification
"""
from presence_cert.flow.errors import (
    BackendError, CaptureInFlightError, ErrorKind, FlowError, FlowStateError
)
from presence_cert.flow.backend import (
    CertificationBackend, HttpCertificationBackend, LocalCertificationBackend
)
from presence_cert.flow.orchestrator import (
    CertificationPath, FlowState, RegistrationContext, VerificationOrchestrator
)
from presence_cert.flow.position import PositionTracker
from presence_cert.flow.self_certification import Recap

__all__ = [
    "BackendError",
    "CaptureInFlightError",
    "CertificationBackend",
    "CertificationPath",
    "ErrorKind",
    "FlowError",
    "FlowState",
    "FlowStateError",
    "HttpCertificationBackend",
    "LocalCertificationBackend",
    "PositionTracker",
    "Recap",
    "RegistrationContext",
    "VerificationOrchestrator",
]
