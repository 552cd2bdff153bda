"""
Organizer Scan Service - consumer of issued verification tokens

An organizer scanning a participant's code is the witness of the operator
path. Consuming the token is the only way attended_at / validated_by get
written for operator-witnessed events.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from presence_cert.db.models import (
    CertificationMode, Event, EventRegistration, RegistrationStatus, User,
    VerificationToken
)
from presence_cert.services.certification_log_service import certification_log_service
from presence_cert.timeutils import utc_now, as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanResult:
    success: bool
    status: str
    registration_id: int
    message: str
    user_name: Optional[str] = None
    event_name: Optional[str] = None
    attended_at: Optional[datetime] = None


class OrganizerScanService:

    def preview(self, db: Session, registration_id: int, token: str) -> ScanResult:
        """Check a scanned code without consuming it (what the organizer sees before confirming)."""
        registration = db.query(EventRegistration).filter(
            EventRegistration.id == registration_id
        ).first()
        if not registration:
            return ScanResult(False, "not_found", registration_id, "Registration not found.")

        user_name = registration.user.display_name if registration.user else None
        event_name = registration.event.name if registration.event else None
        stored = registration.token
        if not stored or not token or not secrets.compare_digest(stored.token, token):
            return ScanResult(False, "invalid_token", registration_id,
                              "Invalid or expired code.", user_name, event_name)
        if stored.consumed or registration.attended_at is not None:
            return ScanResult(False, "already_certified", registration_id,
                              "Participant already certified.", user_name, event_name,
                              as_utc(registration.attended_at))
        return ScanResult(True, "valid", registration_id,
                          f"Confirm the presence of {user_name}.", user_name, event_name)

    def scan(
        self,
        db: Session,
        registration_id: int,
        token: str,
        scanner_id: int,
        now: Optional[datetime] = None
    ) -> ScanResult:
        """Validate a scanned token and mark the registration as attended."""
        now = as_utc(now) or utc_now()

        registration = db.query(EventRegistration).filter(
            EventRegistration.id == registration_id
        ).first()
        if not registration:
            return ScanResult(False, "not_found", registration_id, "Registration not found.")

        user = db.query(User).filter(User.id == registration.user_id).first()
        event = db.query(Event).filter(Event.id == registration.event_id).first()
        user_name = user.display_name if user else None
        event_name = event.name if event else None

        stored = db.query(VerificationToken).filter(
            VerificationToken.registration_id == registration_id
        ).first()
        if not stored or not token or not secrets.compare_digest(stored.token, token):
            logger.warning(f"Invalid token scanned for registration {registration_id}")
            certification_log_service.log(
                db, action="organizer_scan", status="rejected", method=CertificationMode.OPERATOR,
                user_id=registration.user_id, event_id=registration.event_id,
                registration_id=registration_id, details={"scanner_id": scanner_id, "reason": "invalid_token"}
            )
            return ScanResult(False, "invalid_token", registration_id,
                              "Invalid or expired code.", user_name, event_name)

        if stored.consumed or registration.attended_at is not None:
            return ScanResult(False, "already_certified", registration_id,
                              "Participant already certified.", user_name, event_name,
                              as_utc(registration.attended_at))

        try:
            marked = db.execute(
                update(EventRegistration)
                .where(
                    EventRegistration.id == registration_id,
                    EventRegistration.attended_at.is_(None),
                    EventRegistration.status.in_(RegistrationStatus.CERTIFIABLE)
                )
                .values(
                    status=RegistrationStatus.ATTENDED,
                    attended_at=now,
                    validated_by=scanner_id,
                    certification_start_at=as_utc(stored.issued_at),
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )
            consumed = db.execute(
                update(VerificationToken)
                .where(VerificationToken.id == stored.id, VerificationToken.consumed.is_(False))
                .values(consumed=True, consumed_at=now)
                .execution_options(synchronize_session=False)
            )
            if marked.rowcount != 1 or consumed.rowcount != 1:
                db.rollback()
                return ScanResult(False, "already_certified", registration_id,
                                  "Participant already certified.", user_name, event_name)

            certification_log_service.log(
                db, action="organizer_scan", status="recorded", method=CertificationMode.OPERATOR,
                user_id=registration.user_id, event_id=registration.event_id,
                registration_id=registration_id, details={"scanner_id": scanner_id},
                commit=False
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception(f"Failed to record organizer scan for registration {registration_id}")
            raise

        logger.info(f"Registration {registration_id} validated by organizer {scanner_id}")
        return ScanResult(True, "validated", registration_id,
                          f"Presence validated for {user_name}.", user_name, event_name, now)


# Singleton instance
organizer_scan_service = OrganizerScanService()
