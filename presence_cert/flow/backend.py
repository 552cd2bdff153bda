"""
Certification backends

The orchestrator talks to the server through a CertificationBackend. Two
implementations exist:
- LocalCertificationBackend: calls the services in-process with a session
  factory (embedding, tests)
- HttpCertificationBackend: calls the REST API with httpx (any transport,
  including ASGITransport against the app itself)
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional, Protocol

import httpx
from sqlalchemy.orm import Session

from presence_cert.config import settings
from presence_cert.db.models import EventRegistration
from presence_cert.flow.errors import BackendError
from presence_cert.schemas import (
    FaceMatchRequest, FaceMatchResponse, SelfCertificationRequest,
    SelfCertificationResponse, TokenResponse
)
from presence_cert.services.attendance_service import (
    AttendanceRecorder, AttendanceWriteError, RecordOutcome,
    SelfCertificationRecord, UploadedAttachment, attendance_recorder
)
from presence_cert.services.certification_log_service import certification_log_service
from presence_cert.services.geocode_service import GeocodeService, geocode_service
from presence_cert.services.match_oracle_service import MatchOracleService, match_oracle_service
from presence_cert.services.token_service import IssuedToken, TokenStore, token_store
from presence_cert.timeutils import utc_now

logger = logging.getLogger(__name__)

DECLARATION_REQUIRED = "declaration_required"


class CertificationBackend(Protocol):

    async def face_match(self, request: FaceMatchRequest) -> FaceMatchResponse: ...

    async def get_live_token(self, registration_id: int) -> Optional[IssuedToken]: ...

    async def reissue_token(self, registration_id: int) -> FaceMatchResponse: ...

    async def record_self_certification(
        self, registration_id: int, request: SelfCertificationRequest
    ) -> SelfCertificationResponse: ...

    async def reverse_geocode(self, latitude: float, longitude: float) -> Optional[str]: ...


def reissue_for_registration(
    db: Session,
    registration_id: int,
    oracle: MatchOracleService,
    now: Optional[datetime] = None
) -> FaceMatchResponse:
    """
    Issue the token again after a passed match whose token write failed.

    Only allowed while a passed face match for the registration is younger
    than MATCH_PASS_REUSE_SECONDS; otherwise a new capture is required.
    """
    now = now or utc_now()
    registration = db.query(EventRegistration).filter(
        EventRegistration.id == registration_id
    ).first()
    if not registration:
        return FaceMatchResponse(success=False, error="Registration not found.",
                                 error_code="registration_not_found")
    if registration.attended_at is not None:
        return FaceMatchResponse(success=False, error="Presence already certified for this event.",
                                 error_code="already_certified")
    if not certification_log_service.has_recent_pass(
        db, registration_id, settings.MATCH_PASS_REUSE_SECONDS, now=now
    ):
        return FaceMatchResponse(success=False, error="No recent identity check. Please capture again.",
                                 error_code="match_required")
    return oracle.issue_token(db, registration, now=now)


def record_from_request(request: SelfCertificationRequest) -> SelfCertificationRecord:
    return SelfCertificationRecord(
        capture_started_at=request.capture_started_at,
        latitude=request.latitude,
        longitude=request.longitude,
        address=request.address,
        note=request.note,
        attachments=[
            UploadedAttachment(a.kind, a.storage_key, a.public_url, a.uploaded_at)
            for a in request.attachments
        ]
    )


class LocalCertificationBackend:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        oracle: Optional[MatchOracleService] = None,
        tokens: Optional[TokenStore] = None,
        recorder: Optional[AttendanceRecorder] = None,
        geocoder: Optional[GeocodeService] = None
    ):
        self.session_factory = session_factory
        self.oracle = oracle or match_oracle_service
        self.tokens = tokens or token_store
        self.recorder = recorder or attendance_recorder
        self.geocoder = geocoder or geocode_service

    async def face_match(self, request: FaceMatchRequest) -> FaceMatchResponse:
        db = self.session_factory()
        try:
            return await self.oracle.face_match(db, request)
        finally:
            db.close()

    def _with_session(self, fn, *args):
        db = self.session_factory()
        try:
            return fn(db, *args)
        finally:
            db.close()

    async def get_live_token(self, registration_id: int) -> Optional[IssuedToken]:
        return await asyncio.to_thread(self._with_session, self.tokens.get_live_token, registration_id)

    async def reissue_token(self, registration_id: int) -> FaceMatchResponse:
        return await asyncio.to_thread(
            self._with_session,
            lambda db, rid: reissue_for_registration(db, rid, self.oracle),
            registration_id
        )

    async def record_self_certification(
        self, registration_id: int, request: SelfCertificationRequest
    ) -> SelfCertificationResponse:
        if not request.honor_declaration:
            return SelfCertificationResponse(
                registration_id=registration_id, outcome=DECLARATION_REQUIRED, recorded=False,
                message="The honor declaration must be affirmed."
            )
        try:
            result = await asyncio.to_thread(
                self._with_session,
                lambda db, rid: self.recorder.record_self_certification(db, rid, record_from_request(request)),
                registration_id
            )
        except AttendanceWriteError as e:
            raise BackendError(str(e)) from e
        return SelfCertificationResponse(
            registration_id=registration_id,
            outcome=result.outcome.value,
            recorded=result.ok,
            attended_at=result.attended_at,
            message=result.message
        )

    async def reverse_geocode(self, latitude: float, longitude: float) -> Optional[str]:
        return await asyncio.to_thread(self.geocoder.reverse_geocode, latitude, longitude)


class HttpCertificationBackend:

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or settings.PUBLIC_ORIGIN).rstrip("/")
        # The face match waits on the provider, leave it room for its retries
        self.timeout = timeout or settings.FACE_MATCH_TIMEOUT_SEC * 2
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 500:
            raise BackendError(f"{method} {path} returned {response.status_code}")
        return response

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            return response.json().get("detail") or response.reason_phrase
        except ValueError:
            return response.reason_phrase

    async def face_match(self, request: FaceMatchRequest) -> FaceMatchResponse:
        response = await self._request("POST", "/certification/face-match", json=request.model_dump())
        if response.status_code != 200:
            raise BackendError(f"Face match rejected: {self._detail(response)}")
        return FaceMatchResponse.model_validate(response.json())

    async def get_live_token(self, registration_id: int) -> Optional[IssuedToken]:
        response = await self._request("GET", f"/certification/registrations/{registration_id}/token")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise BackendError(f"Token lookup failed: {self._detail(response)}")
        data = TokenResponse.model_validate(response.json())
        if data.consumed:
            return None
        return IssuedToken(registration_id=data.registration_id, token=data.token, issued_at=data.issued_at)

    async def reissue_token(self, registration_id: int) -> FaceMatchResponse:
        response = await self._request("POST", f"/certification/registrations/{registration_id}/token")
        if response.status_code != 200:
            raise BackendError(f"Token reissue failed: {self._detail(response)}")
        return FaceMatchResponse.model_validate(response.json())

    async def record_self_certification(
        self, registration_id: int, request: SelfCertificationRequest
    ) -> SelfCertificationResponse:
        response = await self._request(
            "POST",
            f"/certification/registrations/{registration_id}/self-certification",
            content=request.model_dump_json(),
            headers={"Content-Type": "application/json"}
        )
        if response.status_code == 200:
            return SelfCertificationResponse.model_validate(response.json())

        outcome = {
            400: DECLARATION_REQUIRED,
            403: RecordOutcome.MATCH_REQUIRED.value,
            404: RecordOutcome.NOT_FOUND.value,
            409: RecordOutcome.NOT_ALLOWED.value,
        }.get(response.status_code)
        if outcome is None:
            raise BackendError(f"Self-certification failed: {self._detail(response)}")
        return SelfCertificationResponse(
            registration_id=registration_id, outcome=outcome, recorded=False,
            message=self._detail(response)
        )

    async def reverse_geocode(self, latitude: float, longitude: float) -> Optional[str]:
        response = await self._request(
            "GET", "/certification/reverse-geocode",
            params={"latitude": latitude, "longitude": longitude}
        )
        if response.status_code != 200:
            return None
        return response.json().get("address")
