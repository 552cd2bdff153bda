"""
Attendance Service - self-certification recorder

Writes the final attendance decision of the self-attested path. The write is
one conditional UPDATE, so a registration is certified at most once and is
never left half-updated (status changed without attended_at, or the reverse).
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from presence_cert.db.models import (
    CertificationAttachment, CertificationMode, Event, EventRegistration,
    RegistrationStatus
)
from presence_cert.config import settings
from presence_cert.services.certification_log_service import certification_log_service
from presence_cert.services.eligibility_service import (
    EligibilityEvaluator, EventEnvelope, eligibility_evaluator
)
from presence_cert.timeutils import utc_now, as_utc

logger = logging.getLogger(__name__)


class AttendanceWriteError(Exception):
    """The registration write failed and nothing was applied."""


class RecordOutcome(str, Enum):
    RECORDED = "recorded"
    ALREADY_CERTIFIED = "already_certified"
    NOT_FOUND = "not_found"
    NOT_ALLOWED = "not_allowed"
    MATCH_REQUIRED = "match_required"


@dataclass(frozen=True)
class UploadedAttachment:
    kind: str
    storage_key: str
    public_url: str
    uploaded_at: Optional[datetime] = None


@dataclass
class SelfCertificationRecord:
    """Evidence carried by a self-certification write."""
    capture_started_at: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    note: Optional[str] = None
    attachments: List[UploadedAttachment] = field(default_factory=list)


@dataclass(frozen=True)
class SelfCertificationResult:
    outcome: RecordOutcome
    registration_id: int
    attended_at: Optional[datetime] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == RecordOutcome.RECORDED


class AttendanceRecorder:

    def __init__(
        self,
        evaluator: Optional[EligibilityEvaluator] = None,
        pass_reuse_seconds: Optional[int] = None
    ):
        self.evaluator = evaluator or eligibility_evaluator
        self.pass_reuse_seconds = (
            pass_reuse_seconds if pass_reuse_seconds is not None
            else settings.SELF_CERT_PASS_REUSE_SECONDS
        )

    def record_self_certification(
        self,
        db: Session,
        registration_id: int,
        record: SelfCertificationRecord,
        now: Optional[datetime] = None
    ) -> SelfCertificationResult:
        """
        Record a self-attested presence.

        Sets status=self_certified, attended_at=now (server time) and
        certification_start_at=capture time in a single statement, guarded so
        that only a registration that was never certified, never validated by
        an organizer and is still certifiable gets updated.

        A first write also needs the event window to be open and a passed
        face match for the registration younger than pass_reuse_seconds.

        Raises:
            AttendanceWriteError: the database rejected the write
        """
        attended_at = as_utc(now) or utc_now()

        registration = db.query(EventRegistration).filter(
            EventRegistration.id == registration_id
        ).first()
        if not registration:
            return SelfCertificationResult(RecordOutcome.NOT_FOUND, registration_id, message="Registration not found")

        event = db.query(Event).filter(Event.id == registration.event_id).first()
        if not event or event.certification_mode != CertificationMode.SELF_ATTESTED:
            return SelfCertificationResult(
                RecordOutcome.NOT_ALLOWED, registration_id,
                message="Self-certification is not enabled for this event"
            )

        if registration.attended_at is None:
            refusal = self._check_preconditions(db, registration, event, attended_at)
            if refusal:
                return refusal

        stmt = (
            update(EventRegistration)
            .where(
                EventRegistration.id == registration_id,
                EventRegistration.attended_at.is_(None),
                EventRegistration.validated_by.is_(None),
                EventRegistration.status.in_(RegistrationStatus.CERTIFIABLE)
            )
            .values(
                status=RegistrationStatus.SELF_CERTIFIED,
                attended_at=attended_at,
                certification_start_at=as_utc(record.capture_started_at),
                self_cert_note=record.note,
                self_cert_latitude=record.latitude,
                self_cert_longitude=record.longitude,
                self_cert_address=record.address,
                updated_at=attended_at
            )
            .execution_options(synchronize_session=False)
        )

        try:
            result = db.execute(stmt)
            if result.rowcount != 1:
                db.rollback()
                db.expire_all()
                current = db.query(EventRegistration).filter(
                    EventRegistration.id == registration_id
                ).first()
                if current is not None and current.attended_at is not None:
                    logger.info(f"Registration {registration_id} already certified, write skipped")
                    return SelfCertificationResult(
                        RecordOutcome.ALREADY_CERTIFIED, registration_id,
                        attended_at=as_utc(current.attended_at),
                        message="Presence already certified"
                    )
                return SelfCertificationResult(
                    RecordOutcome.NOT_ALLOWED, registration_id,
                    message=f"Registration status '{current.status if current else 'unknown'}' cannot be certified"
                )

            for attachment in record.attachments:
                db.add(CertificationAttachment(
                    registration_id=registration_id,
                    kind=attachment.kind,
                    storage_key=attachment.storage_key,
                    public_url=attachment.public_url,
                    uploaded_at=as_utc(attachment.uploaded_at) or attended_at
                ))

            certification_log_service.log(
                db,
                action="self_certification",
                status="recorded",
                method=CertificationMode.SELF_ATTESTED,
                user_id=registration.user_id,
                event_id=registration.event_id,
                registration_id=registration_id,
                latitude=record.latitude,
                longitude=record.longitude,
                details={
                    "capture_started_at": as_utc(record.capture_started_at).isoformat(),
                    "address": record.address,
                    "attachments": len(record.attachments),
                },
                commit=False
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Self-certification write failed for registration {registration_id}: {e}")
            raise AttendanceWriteError(str(e)) from e

        logger.info(f"Registration {registration_id} self-certified at {attended_at.isoformat()}")
        return SelfCertificationResult(RecordOutcome.RECORDED, registration_id, attended_at=attended_at)

    def _check_preconditions(
        self, db: Session, registration: EventRegistration, event: Event, now: datetime
    ) -> Optional[SelfCertificationResult]:
        if registration.status not in RegistrationStatus.CERTIFIABLE:
            return SelfCertificationResult(
                RecordOutcome.NOT_ALLOWED, registration.id,
                message=f"Registration status '{registration.status}' cannot be certified"
            )

        window = self.evaluator.evaluate(EventEnvelope.from_event(event), now, None)
        if not window.is_within_time_window:
            return SelfCertificationResult(
                RecordOutcome.NOT_ALLOWED, registration.id,
                message="The certification window for this event is not open"
            )

        if not certification_log_service.has_recent_pass(db, registration.id, self.pass_reuse_seconds, now=now):
            logger.warning(f"Self-certification for registration {registration.id} without a recent face match")
            return SelfCertificationResult(
                RecordOutcome.MATCH_REQUIRED, registration.id,
                message="No recent identity check. Please capture again."
            )
        return None


# Singleton instance
attendance_recorder = AttendanceRecorder()
