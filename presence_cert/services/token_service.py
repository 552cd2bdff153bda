"""
Token Service - verification token store

A registration owns at most one token. The first passed face match of an
operator-witnessed registration creates it; every later call returns the
same token (create-or-return), including concurrent duplicate calls.
"""
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from presence_cert.db.models import EventRegistration, VerificationToken
from presence_cert.timeutils import utc_now, as_utc

logger = logging.getLogger(__name__)

# 32 random bytes -> 256 bits of entropy, hex encoded
TOKEN_BYTES = 32

LOCK_STRIPES = 64


class TokenIssuanceError(Exception):
    """Token could not be issued or read back."""


@dataclass(frozen=True)
class IssuedToken:
    registration_id: int
    token: str
    issued_at: datetime
    consumed: bool = False
    created: bool = False

    @classmethod
    def from_row(cls, row: VerificationToken, created: bool = False) -> "IssuedToken":
        return cls(
            registration_id=row.registration_id,
            token=row.token,
            issued_at=as_utc(row.issued_at),
            consumed=bool(row.consumed),
            created=created,
        )


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


class TokenStore:
    """Durable registration -> token association."""

    def __init__(self, lock_stripes: int = LOCK_STRIPES):
        # Fixed pool; registrations sharing a stripe only serialize briefly
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(lock_stripes)]

    def _lock_for(self, registration_id: int) -> threading.Lock:
        return self._locks[registration_id % len(self._locks)]

    def get_token(self, db: Session, registration_id: int) -> Optional[IssuedToken]:
        row = db.query(VerificationToken).filter(
            VerificationToken.registration_id == registration_id
        ).first()
        return IssuedToken.from_row(row) if row else None

    def get_live_token(self, db: Session, registration_id: int) -> Optional[IssuedToken]:
        """Unconsumed token for the registration, if any."""
        token = self.get_token(db, registration_id)
        if token and not token.consumed:
            return token
        return None

    def issue_or_get_token(
        self,
        db: Session,
        registration_id: int,
        now: Optional[datetime] = None
    ) -> IssuedToken:
        """
        Create the registration's token, or return the one it already owns.

        Safe under duplicate concurrent calls: a process-local lock serializes
        callers for the same registration and the unique constraint on
        registration_id settles races between processes.

        Returns:
            IssuedToken with created=True only for the call that minted it

        Raises:
            TokenIssuanceError: registration missing or the store is failing
        """
        with self._lock_for(registration_id):
            existing = self.get_token(db, registration_id)
            if existing:
                return existing

            registration = db.query(EventRegistration).filter(
                EventRegistration.id == registration_id
            ).first()
            if not registration:
                raise TokenIssuanceError(f"Registration {registration_id} not found")

            row = VerificationToken(
                registration_id=registration_id,
                token=generate_token(),
                issued_at=as_utc(now) or utc_now(),
                consumed=False
            )
            try:
                db.add(row)
                db.commit()
            except IntegrityError:
                # Another process won the race; hand back its token
                db.rollback()
                existing = self.get_token(db, registration_id)
                if existing:
                    logger.info(f"Token for registration {registration_id} issued concurrently, reusing it")
                    return existing
                raise TokenIssuanceError(f"Token for registration {registration_id} could not be read back")
            except Exception as e:
                db.rollback()
                logger.error(f"Token issuance failed for registration {registration_id}: {e}")
                raise TokenIssuanceError(str(e)) from e

            db.refresh(row)
            logger.info(f"Issued token {row.token[:8]}... for registration {registration_id}")
            return IssuedToken.from_row(row, created=True)


# Singleton instance
token_store = TokenStore()
