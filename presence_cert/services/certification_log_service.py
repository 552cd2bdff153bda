"""
Certification Log Service - append-only audit trail

Every face match, token issuance, self-certification and organizer scan
leaves one row, so support can reconstruct what happened to a registration.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

from sqlalchemy.orm import Session

from presence_cert.db.models import CertificationLog
from presence_cert.timeutils import utc_now, as_utc

logger = logging.getLogger(__name__)


class CertificationLogService:

    def log(
        self,
        db: Session,
        action: str,
        status: str,
        method: str,
        user_id: Optional[int] = None,
        event_id: Optional[int] = None,
        registration_id: Optional[int] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
        commit: bool = True
    ) -> Optional[int]:
        """
        Append an audit row.

        Audit failures are logged and never break the certification itself.
        With commit=False the row joins the caller's transaction and errors
        propagate to the caller, who owns the rollback.
        """
        if not commit:
            entry = self._entry(action, status, method, user_id, event_id,
                                registration_id, latitude, longitude, details)
            db.add(entry)
            db.flush()
            return entry.id

        try:
            entry = self._entry(action, status, method, user_id, event_id,
                                registration_id, latitude, longitude, details)
            db.add(entry)
            db.commit()
            return entry.id
        except Exception as e:
            logger.error(f"Failed to write certification log ({action}/{status}): {e}")
            db.rollback()
            return None

    @staticmethod
    def _entry(action, status, method, user_id, event_id, registration_id,
               latitude, longitude, details) -> CertificationLog:
        return CertificationLog(
            user_id=user_id,
            event_id=event_id,
            registration_id=registration_id,
            action=action,
            status=status,
            method=method,
            latitude=latitude,
            longitude=longitude,
            details=details or {},
            created_at=utc_now()
        )

    def has_recent_pass(
        self,
        db: Session,
        registration_id: int,
        max_age_seconds: int,
        now: Optional[datetime] = None
    ) -> bool:
        """Whether a passed face match was logged for the registration recently."""
        now = as_utc(now) or utc_now()
        latest = db.query(CertificationLog).filter(
            CertificationLog.registration_id == registration_id,
            CertificationLog.action == "face_match",
            CertificationLog.status == "passed"
        ).order_by(CertificationLog.created_at.desc()).first()

        if not latest:
            return False
        return now - as_utc(latest.created_at) <= timedelta(seconds=max_age_seconds)

    def list_logs(
        self,
        db: Session,
        page: int = 0,
        page_size: int = 50,
        status: Optional[str] = None,
        registration_id: Optional[int] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Paged audit listing, newest first."""
        query = db.query(CertificationLog)

        if status:
            query = query.filter(CertificationLog.status == status)
        if registration_id is not None:
            query = query.filter(CertificationLog.registration_id == registration_id)
        if date_from:
            query = query.filter(CertificationLog.created_at >= date_from)
        if date_to:
            query = query.filter(CertificationLog.created_at <= date_to)

        total = query.count()
        rows = query.order_by(
            CertificationLog.created_at.desc(), CertificationLog.id.desc()
        ).offset(page * page_size).limit(page_size).all()

        return {
            "total": total,
            "page": page,
            "page_size": page_size,
            "logs": [
                {
                    "id": row.id,
                    "user_id": row.user_id,
                    "event_id": row.event_id,
                    "registration_id": row.registration_id,
                    "action": row.action,
                    "status": row.status,
                    "method": row.method,
                    "latitude": row.latitude,
                    "longitude": row.longitude,
                    "metadata": row.details or {},
                    "created_at": as_utc(row.created_at).isoformat(),
                }
                for row in rows
            ]
        }


# Singleton instance
certification_log_service = CertificationLogService()
