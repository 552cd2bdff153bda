"""
Match Oracle Service - server side of the face-match call

Given a registration and a freshly captured still:
1. Checks the registration can still be certified (not certified, in window)
2. Checks the user's identity verification is still valid
3. Asks the face match provider for a score
4. On a pass for an operator-witnessed event, issues (or re-returns) the
   registration's verification token

The token is persisted before the response is produced, so a client that
stopped waiting still finds its token on the next visit.
"""
import base64
import binascii
import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from presence_cert.config import settings
from presence_cert.db.models import (
    CertificationMode, Event, EventRegistration, RegistrationStatus, User
)
from presence_cert.schemas import FaceMatchRequest, FaceMatchResponse
from presence_cert.services.certification_log_service import certification_log_service
from presence_cert.services.eligibility_service import (
    EligibilityEvaluator, EventEnvelope, LocationStatus, Position,
    PositionReading, TimeStatus, eligibility_evaluator
)
from presence_cert.services.face_match_provider import (
    FaceMatchProvider, FaceMatchProviderError, face_match_provider
)
from presence_cert.services.token_service import TokenIssuanceError, TokenStore, token_store
from presence_cert.timeutils import utc_now, as_utc

logger = logging.getLogger(__name__)

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")

REVERIFICATION_MESSAGE = (
    "Your identity verification has expired. "
    "Please verify your identity again from your account settings."
)


def decode_live_image(payload: str) -> Optional[bytes]:
    """Decode a base64 still, tolerating a data-URL prefix."""
    if not payload:
        return None
    try:
        data = base64.b64decode(_DATA_URL_PREFIX.sub("", payload.strip()), validate=True)
    except (binascii.Error, ValueError):
        return None
    return data or None


class MatchOracleService:

    def __init__(
        self,
        provider: Optional[FaceMatchProvider] = None,
        tokens: Optional[TokenStore] = None,
        evaluator: Optional[EligibilityEvaluator] = None,
        threshold: Optional[float] = None
    ):
        self.provider = provider or face_match_provider
        self.tokens = tokens or token_store
        self.evaluator = evaluator or eligibility_evaluator
        self.threshold = threshold if threshold is not None else settings.FACE_MATCH_THRESHOLD

    async def face_match(
        self,
        db: Session,
        request: FaceMatchRequest,
        now: Optional[datetime] = None
    ) -> FaceMatchResponse:
        """
        Run one face-match attempt for a registration.

        Returns:
            FaceMatchResponse; never raises for domain or provider failures
        """
        now = as_utc(now) or utc_now()

        live_image = decode_live_image(request.live_image)
        if live_image is None:
            return self._failure("The captured image could not be read.", "invalid_image")

        registration = db.query(EventRegistration).filter(
            EventRegistration.id == request.registration_id,
            EventRegistration.user_id == request.user_id,
            EventRegistration.event_id == request.event_id
        ).first()
        if not registration:
            logger.warning(f"Face match for unknown registration {request.registration_id}")
            return self._failure("Registration not found.", "registration_not_found")

        event = db.query(Event).filter(Event.id == registration.event_id).first()
        method = event.certification_mode if event else CertificationMode.OPERATOR

        if registration.attended_at is not None:
            return self._failure("Presence already certified for this event.", "already_certified")
        if registration.status not in RegistrationStatus.CERTIFIABLE:
            return self._failure(
                f"Registration status '{registration.status}' cannot be certified.", "not_allowed"
            )

        refusal = self._check_envelope(event, request, now)
        if refusal:
            return refusal

        user = db.query(User).filter(User.id == registration.user_id).first()
        if self._needs_reverification(user, now):
            logger.info(f"User {request.user_id} needs identity re-verification")
            certification_log_service.log(
                db, action="face_match", status="rejected", method=method,
                user_id=request.user_id, event_id=request.event_id,
                registration_id=registration.id,
                details={"reason": "needs_reverification"}
            )
            return FaceMatchResponse(
                success=False,
                needs_reverification=True,
                error=REVERIFICATION_MESSAGE,
                error_code="needs_reverification"
            )

        try:
            reference = await self.provider.fetch_reference(user.reference_selfie_url)
            score = await self.provider.compare(live_image, reference)
        except FaceMatchProviderError as e:
            certification_log_service.log(
                db, action="face_match", status="error", method=method,
                user_id=request.user_id, event_id=request.event_id,
                registration_id=registration.id, details={"error": str(e)}
            )
            return self._failure(str(e), "provider_error")

        passed = score >= self.threshold
        certification_log_service.log(
            db, action="face_match", status="passed" if passed else "failed", method=method,
            user_id=request.user_id, event_id=request.event_id,
            registration_id=registration.id,
            latitude=request.latitude, longitude=request.longitude,
            details={"score": round(score, 2), "threshold": self.threshold}
        )

        if not passed:
            logger.info(f"Face match failed for registration {registration.id} with score {score:.1f}")
            return FaceMatchResponse(success=True, passed=False, score=score)

        if method != CertificationMode.OPERATOR:
            # Self-attested path: identity proven, no token
            return FaceMatchResponse(success=True, passed=True, score=score)

        return self.issue_token(db, registration, score=score, now=now)

    def issue_token(
        self,
        db: Session,
        registration: EventRegistration,
        score: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> FaceMatchResponse:
        """Issue or re-return the registration's token after a passed match."""
        try:
            issued = self.tokens.issue_or_get_token(db, registration.id, now=now)
        except TokenIssuanceError as e:
            logger.error(f"Token issuance failed after passed match for registration {registration.id}: {e}")
            return FaceMatchResponse(
                success=False,
                passed=True,
                score=score,
                error="Your identity was verified but the code could not be saved. Please retry.",
                error_code="token_issuance_failed"
            )

        if issued.created:
            certification_log_service.log(
                db, action="token_issued", status="recorded", method=CertificationMode.OPERATOR,
                user_id=registration.user_id, event_id=registration.event_id,
                registration_id=registration.id
            )

        return FaceMatchResponse(
            success=True,
            passed=True,
            score=score,
            token=issued.token,
            cached=not issued.created
        )

    def _check_envelope(self, event: Optional[Event], request: FaceMatchRequest, now: datetime):
        if event is None:
            return self._failure("Event not found.", "registration_not_found")

        reading = None
        if request.latitude is not None and request.longitude is not None:
            reading = PositionReading.available(
                Position(latitude=request.latitude, longitude=request.longitude, captured_at=now)
            )
        result = self.evaluator.evaluate(EventEnvelope.from_event(event), now, reading)

        if result.location_status == LocationStatus.NO_EVENT_COORDINATES:
            return self._failure(result.reason, "not_offered")
        if result.time_status != TimeStatus.OPEN:
            return self._failure(result.reason, "outside_window")
        if result.location_status == LocationStatus.TOO_FAR:
            return self._failure(result.reason, "outside_radius")
        return None

    @staticmethod
    def _needs_reverification(user: Optional[User], now: datetime) -> bool:
        if user is None or not user.id_verified or not user.reference_selfie_url:
            return True
        verified_at = as_utc(user.id_verified_at)
        if verified_at is None:
            return False
        max_age = timedelta(days=settings.IDENTITY_VERIFICATION_MAX_AGE_DAYS)
        return now - verified_at > max_age

    @staticmethod
    def _failure(message: str, code: str) -> FaceMatchResponse:
        return FaceMatchResponse(success=False, error=message, error_code=code)


# Singleton instance
match_oracle_service = MatchOracleService()
