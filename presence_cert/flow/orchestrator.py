"""
Verification Orchestrator - client-side certification state machine

One orchestrator drives one registration through:

    instructions -> capturing -> processing -> qr_issued          (operator)
                                            -> recap -> confirming -> success  (self-attested)

Any step may end in `error` (retry resumes at the right point, see FlowError)
and `close()` ends the flow from anywhere. Transitions are only driven by
confirmed responses: the token and the attendance write are one-shot effects.
"""
import asyncio
import base64
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from presence_cert.config import settings
from presence_cert.flow.backend import CertificationBackend
from presence_cert.flow.errors import (
    CaptureInFlightError, ErrorKind, FlowError, FlowStateError
)
from presence_cert.flow.position import PositionTracker
from presence_cert.flow.self_certification import Recap
from presence_cert.flow.sensors import (
    CAMERA_MISSING_MESSAGE, CAMERA_PERMISSION_MESSAGE, CaptureSession, CaptureSource,
    SensorError, SensorNotFoundError, SensorPermissionError
)
from presence_cert.schemas import FaceMatchRequest, FaceMatchResponse, SelfCertificationResponse
from presence_cert.services.eligibility_service import EligibilityResult, Position
from presence_cert.services.evidence_service import Attachment, EvidenceUploader
from presence_cert.services.qr_service import build_verification_url
from presence_cert.timeutils import utc_now

logger = logging.getLogger(__name__)

ORACLE_FAILURE_MESSAGE = "The identity check could not be completed. Please try again."
TOKEN_SAVE_FAILURE_MESSAGE = "Your identity was verified but your code could not be saved. Please retry."
WRITE_FAILURE_MESSAGE = "Your identity was verified but your presence could not be saved. Please retry."
CAPTURE_TIMEOUT_MESSAGE = "The camera did not deliver an image in time. Please try again."
CAMERA_ERROR_MESSAGE = "The camera could not be started. Please try again."
MATCH_EXPIRED_MESSAGE = "Your identity check has expired. Please capture again."

# Server refusals no new capture can fix
FINAL_ERROR_CODES = {"already_certified", "not_allowed", "registration_not_found", "not_offered"}


class FlowState(str, Enum):
    INSTRUCTIONS = "instructions"
    CAPTURING = "capturing"
    PROCESSING = "processing"
    QR_ISSUED = "qr_issued"
    RECAP = "recap"
    CONFIRMING = "confirming"
    SUCCESS = "success"
    ERROR = "error"
    CLOSED = "closed"


class CertificationPath(str, Enum):
    OPERATOR = "operator"
    SELF_ATTESTED = "self_attested"


@dataclass(frozen=True)
class RegistrationContext:
    registration_id: int
    user_id: int
    event_id: int
    path: CertificationPath
    event_name: Optional[str] = None


def encode_live_image(frame: bytes) -> str:
    return "data:image/jpeg;base64," + base64.b64encode(frame).decode("ascii")


def _drain(task: asyncio.Task) -> None:
    """Retrieve the outcome of a match nobody waits for anymore."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(f"Abandoned face match failed: {exc}")
    else:
        logger.info("Abandoned face match completed; its server-side effect is kept")


def _same_point(a: Position, b: Optional[Position]) -> bool:
    return b is not None and (a.latitude, a.longitude) == (b.latitude, b.longitude)


class VerificationOrchestrator:

    def __init__(
        self,
        context: RegistrationContext,
        backend: CertificationBackend,
        capture_source: CaptureSource,
        position: Optional[PositionTracker] = None,
        uploader: Optional[EvidenceUploader] = None,
        capture_timeout: Optional[float] = None,
        success_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        clock: Callable = utc_now,
        origin: Optional[str] = None
    ):
        self.context = context
        self.backend = backend
        self.capture_source = capture_source
        self.position = position
        self.uploader = uploader
        self.capture_timeout = capture_timeout or settings.CAPTURE_TIMEOUT_SECONDS
        self.success_delay = settings.FLOW_SUCCESS_DELAY_SECONDS if success_delay is None else success_delay
        self.sleep = sleep
        self.clock = clock
        self.origin = origin

        self.state = FlowState.INSTRUCTIONS
        self.error: Optional[FlowError] = None
        self.token: Optional[str] = None
        self.cached = False
        self.score: Optional[float] = None
        self.capture_started_at = None
        self.recap: Optional[Recap] = None
        self.result: Optional[SelfCertificationResponse] = None
        self.pending_match: Optional[asyncio.Task] = None

        self._opened = False
        self._closed = asyncio.Event()
        self._camera_stack: Optional[AsyncExitStack] = None
        self._camera: Optional[CaptureSession] = None
        self._listeners: List[Callable[[FlowState, FlowState], None]] = []

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def subscribe(self, listener: Callable[[FlowState, FlowState], None]) -> None:
        """Call listener(previous, current) on every transition."""
        self._listeners.append(listener)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def camera_active(self) -> bool:
        return self._camera_stack is not None

    @property
    def verification_url(self) -> Optional[str]:
        if not self.token:
            return None
        return build_verification_url(self.context.registration_id, self.token, self.origin)

    def _transition(self, state: FlowState) -> None:
        # Late results never move a closed flow
        if self._closed.is_set() and state != FlowState.CLOSED:
            return
        previous, self.state = self.state, state
        logger.debug(f"Registration {self.context.registration_id}: {previous.value} -> {state.value}")
        for listener in list(self._listeners):
            listener(previous, state)

    def _fail(self, kind: ErrorKind, message: str, resume: Optional[FlowState]) -> FlowState:
        if not self._closed.is_set():
            self.error = FlowError(kind=kind, message=message, resume_state=resume)
            logger.info(f"Registration {self.context.registration_id} flow error: {kind.value}")
        self._transition(FlowState.ERROR)
        return self.state

    def _require(self, *states: FlowState, op: str) -> None:
        if self._closed.is_set():
            raise FlowStateError(f"Cannot {op}: the flow is closed")
        if self.state not in states:
            raise FlowStateError(f"Cannot {op} while {self.state.value}")

    # ------------------------------------------------------------------
    # Camera lease
    # ------------------------------------------------------------------

    async def _acquire_camera(self) -> CaptureSession:
        stack = AsyncExitStack()
        try:
            camera = await asyncio.wait_for(
                stack.enter_async_context(self.capture_source.open()), self.capture_timeout
            )
        except BaseException:
            await stack.aclose()
            raise
        self._camera_stack, self._camera = stack, camera
        if self._closed.is_set():
            await self._release_camera()
            raise FlowStateError("The flow was closed while the camera started")
        return camera

    async def _release_camera(self) -> None:
        stack, self._camera_stack, self._camera = self._camera_stack, None, None
        if stack is None:
            return
        try:
            await stack.aclose()
        except Exception as e:
            logger.warning(f"Camera release failed for registration {self.context.registration_id}: {e}")

    def _sensor_failure(self, exc: BaseException) -> FlowState:
        if isinstance(exc, SensorPermissionError):
            return self._fail(ErrorKind.PERMISSION_DENIED, CAMERA_PERMISSION_MESSAGE, FlowState.INSTRUCTIONS)
        if isinstance(exc, SensorNotFoundError):
            return self._fail(ErrorKind.SENSOR_UNAVAILABLE, CAMERA_MISSING_MESSAGE, None)
        if isinstance(exc, asyncio.TimeoutError):
            return self._fail(ErrorKind.CAPTURE_TIMEOUT, CAPTURE_TIMEOUT_MESSAGE, FlowState.INSTRUCTIONS)
        logger.warning(f"Camera failure for registration {self.context.registration_id}: {exc}")
        return self._fail(ErrorKind.SENSOR_ERROR, CAMERA_ERROR_MESSAGE, FlowState.INSTRUCTIONS)

    # ------------------------------------------------------------------
    # Shared capture / match
    # ------------------------------------------------------------------

    async def open(self, eligibility: Optional[EligibilityResult] = None) -> FlowState:
        """
        Enter the flow.

        On the operator path a live token short-circuits to qr_issued whatever
        the eligibility says. Otherwise the registration must be eligible.

        Raises:
            FlowStateError: already opened, or not eligible
        """
        self._require(FlowState.INSTRUCTIONS, op="open")
        if self._opened:
            raise FlowStateError("The flow is already open")

        if self.context.path == CertificationPath.OPERATOR:
            try:
                live = await self.backend.get_live_token(self.context.registration_id)
            except Exception as e:
                # A capture will return the same token through create-or-return
                logger.warning(f"Live token lookup failed for registration {self.context.registration_id}: {e}")
                live = None
            if live is not None:
                self._opened = True
                self.token = live.token
                self.cached = True
                self._transition(FlowState.QR_ISSUED)
                return self.state

        if eligibility is None or not eligibility.is_eligible:
            reason = eligibility.reason if eligibility else "Eligibility unknown"
            raise FlowStateError(f"Certification is not available: {reason}")

        self._opened = True
        return self.state

    async def start_capture(self) -> FlowState:
        """instructions -> capturing: start the camera."""
        self._require(FlowState.INSTRUCTIONS, op="start the capture")
        if not self._opened:
            raise FlowStateError("open() must succeed before capturing")

        self.error = None
        self._transition(FlowState.CAPTURING)
        try:
            await self._acquire_camera()
        except FlowStateError:
            return self.state
        except (SensorError, asyncio.TimeoutError) as e:
            return self._sensor_failure(e)
        return self.state

    async def capture(self) -> FlowState:
        """
        capturing -> processing: take one still, release the camera and run
        exactly one face match.

        Raises:
            CaptureInFlightError: a match for this flow is still pending
        """
        if self.pending_match is not None and not self.pending_match.done():
            raise CaptureInFlightError(
                f"A face match is already pending for registration {self.context.registration_id}"
            )
        self._require(FlowState.CAPTURING, op="capture")

        try:
            frame = await asyncio.wait_for(self._camera.capture_still(), self.capture_timeout)
        except (SensorError, asyncio.TimeoutError) as e:
            await self._release_camera()
            return self._sensor_failure(e)
        await self._release_camera()
        if self._closed.is_set():
            return self.state

        self.capture_started_at = self.clock()
        self._transition(FlowState.PROCESSING)

        position = self.position.position if self.position else None
        request = FaceMatchRequest(
            user_id=self.context.user_id,
            event_id=self.context.event_id,
            registration_id=self.context.registration_id,
            live_image=encode_live_image(frame),
            latitude=position.latitude if position else None,
            longitude=position.longitude if position else None,
        )
        self.pending_match = asyncio.ensure_future(self.backend.face_match(request))
        return await self._await_match(self.pending_match)

    async def _await_match(self, task: asyncio.Task) -> FlowState:
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            # Never cancels the match itself
            await asyncio.wait({task, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()

        if self._closed.is_set():
            return self.state

        try:
            response = task.result()
        except Exception as e:
            logger.warning(f"Face match call failed for registration {self.context.registration_id}: {e}")
            return self._fail(ErrorKind.ORACLE_FAILURE, ORACLE_FAILURE_MESSAGE, FlowState.INSTRUCTIONS)
        return await self._apply_match(response)

    async def _apply_match(self, response: FaceMatchResponse) -> FlowState:
        if response.score is not None:
            self.score = response.score

        if not response.success:
            if response.needs_reverification:
                return self._fail(ErrorKind.NEEDS_REVERIFICATION, response.error or ORACLE_FAILURE_MESSAGE, None)
            if response.passed and response.error_code == "token_issuance_failed":
                return self._fail(ErrorKind.PERSISTENCE_FAILURE, TOKEN_SAVE_FAILURE_MESSAGE, FlowState.QR_ISSUED)
            if response.error_code in FINAL_ERROR_CODES:
                return self._fail(ErrorKind.NOT_ALLOWED, response.error or ORACLE_FAILURE_MESSAGE, None)
            return self._fail(ErrorKind.ORACLE_FAILURE, response.error or ORACLE_FAILURE_MESSAGE,
                              FlowState.INSTRUCTIONS)

        if not response.passed:
            score = round(response.score or 0)
            return self._fail(
                ErrorKind.SCORE_TOO_LOW,
                f"Face match score too low ({score}%). Please try again facing the camera in good light.",
                FlowState.INSTRUCTIONS
            )

        if self.context.path == CertificationPath.OPERATOR:
            if not response.token:
                return self._fail(ErrorKind.ORACLE_FAILURE, ORACLE_FAILURE_MESSAGE, FlowState.INSTRUCTIONS)
            self.token = response.token
            self.cached = response.cached
            target = FlowState.QR_ISSUED
        else:
            self.recap = Recap(
                capture_started_at=self.capture_started_at or self.clock(),
                position=self.position.position if self.position else None
            )
            target = FlowState.RECAP

        if not response.cached:
            await self.sleep(self.success_delay)
        self._transition(target)

        if target == FlowState.RECAP and not self._closed.is_set():
            await self._resolve_address()
        return self.state

    async def retry(self) -> FlowState:
        """
        error -> the state the failure resumes at.

        Capture-side failures go back to instructions. A failed token write
        is reissued without a new capture, a failed attendance write returns
        to the recap.

        Raises:
            FlowStateError: not in error, or the error only allows cancel
        """
        self._require(FlowState.ERROR, op="retry")
        if not self.error.retryable:
            raise FlowStateError(f"{self.error.kind.value} cannot be retried in this flow")

        resume = self.error.resume_state
        self.error = None

        if resume == FlowState.QR_ISSUED:
            self._transition(FlowState.PROCESSING)
            self.pending_match = asyncio.ensure_future(
                self.backend.reissue_token(self.context.registration_id)
            )
            return await self._await_match(self.pending_match)

        self._transition(resume)
        return self.state

    async def close(self) -> None:
        """Leave the flow from any state. The camera is always released."""
        if self.state == FlowState.CLOSED:
            return
        self._closed.set()
        self._transition(FlowState.CLOSED)
        await self._release_camera()
        if self.pending_match is not None and not self.pending_match.done():
            self.pending_match.add_done_callback(_drain)

    # ------------------------------------------------------------------
    # Self-attested recap
    # ------------------------------------------------------------------

    def _require_recap(self, op: str) -> Recap:
        self._require(FlowState.RECAP, op=op)
        return self.recap

    def set_note(self, note: Optional[str]) -> None:
        self._require_recap("edit the note").set_note(note)

    def affirm_declaration(self, affirmed: bool = True) -> None:
        self._require_recap("affirm the declaration").honor_declaration = affirmed

    def add_file(self, content: bytes, filename: str, content_type: Optional[str] = None) -> Attachment:
        attachment = Attachment(kind="file", content=content, filename=filename, content_type=content_type)
        self._require_recap("attach a file").add_attachment(attachment)
        return attachment

    async def capture_attachment(self) -> Optional[Attachment]:
        """Second camera capture for evidence; failures stay in the recap."""
        recap = self._require_recap("capture a photo")
        recap.attachment_error = None
        try:
            camera = await self._acquire_camera()
            frame = await asyncio.wait_for(camera.capture_still(), self.capture_timeout)
        except SensorPermissionError:
            recap.attachment_error = CAMERA_PERMISSION_MESSAGE
            return None
        except SensorNotFoundError:
            recap.attachment_error = CAMERA_MISSING_MESSAGE
            return None
        except (SensorError, asyncio.TimeoutError, FlowStateError) as e:
            logger.info(f"Evidence photo capture failed: {e}")
            recap.attachment_error = CAMERA_ERROR_MESSAGE
            return None
        finally:
            await self._release_camera()

        attachment = Attachment(kind="image", content=frame, content_type="image/jpeg")
        recap.add_attachment(attachment)
        return attachment

    async def _resolve_address(self) -> None:
        position = self.recap.position if self.recap else None
        if position is None:
            return
        try:
            self.recap.address = await self.backend.reverse_geocode(position.latitude, position.longitude)
        except Exception as e:
            logger.info(f"Reverse geocoding skipped for registration {self.context.registration_id}: {e}")

    async def confirm(self) -> bool:
        """
        recap -> confirming -> success | error.

        A no-op (False, nothing sent) without the honor declaration or while a
        confirmation is already running.

        Returns:
            True once the attendance is recorded
        """
        if self.state == FlowState.CONFIRMING:
            return False
        recap = self._require_recap("confirm")
        if not recap.honor_declaration:
            return False

        self._transition(FlowState.CONFIRMING)

        latest = self.position.position if self.position is not None else None
        if latest is not None and not _same_point(latest, recap.position):
            # The address must describe the coordinates that are sent
            recap.position = latest
            recap.address = None
            await self._resolve_address()

        pending = recap.pending_uploads
        if pending:
            if self.uploader is None:
                logger.warning(f"No evidence store configured, {len(pending)} attachments dropped")
                results = [None] * len(pending)
            else:
                results = await self.uploader.upload_each(self.context.registration_id, pending)
            recap.mark_uploaded(pending, results)

        if self._closed.is_set():
            return False

        try:
            response = await self.backend.record_self_certification(
                self.context.registration_id, recap.build_request()
            )
        except Exception as e:
            logger.error(f"Self-certification write failed for registration {self.context.registration_id}: {e}")
            self._fail(ErrorKind.PERSISTENCE_FAILURE, WRITE_FAILURE_MESSAGE, FlowState.RECAP)
            return False

        if response.recorded or response.outcome == "already_certified":
            self.result = response
            self._transition(FlowState.SUCCESS)
            return self.state == FlowState.SUCCESS

        if response.outcome == "match_required":
            # The identity check expired while in the recap; a new capture is needed
            self._fail(ErrorKind.ORACLE_FAILURE, MATCH_EXPIRED_MESSAGE, FlowState.INSTRUCTIONS)
            return False

        self._fail(ErrorKind.NOT_ALLOWED, response.message or "Presence could not be certified.", None)
        return False
