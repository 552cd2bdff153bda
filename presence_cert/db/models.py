"""
SQLAlchemy ORM Models for the Presence Certification Service
"""
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, DateTime,
    ForeignKey, JSON, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from presence_cert.db.database import Base
from presence_cert.timeutils import utc_now

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class CertificationMode:
    OPERATOR = "operator"
    SELF_ATTESTED = "self_attested"


class RegistrationStatus:
    REGISTERED = "registered"
    APPROVED = "approved"
    WAITLISTED = "waitlisted"
    SELF_CERTIFIED = "self_certified"
    ATTENDED = "attended"
    CANCELLED = "cancelled"

    # Statuses from which a certification may be recorded
    CERTIFIABLE = (REGISTERED, APPROVED)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)
    first_name = Column(String(100))
    last_name = Column(String(100))
    id_verified = Column(Boolean, default=False, nullable=False)
    id_verified_at = Column(DateTime(timezone=True))
    reference_selfie_url = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    registrations = relationship(
        "EventRegistration",
        back_populates="user",
        foreign_keys="EventRegistration.user_id"
    )

    @property
    def display_name(self) -> str:
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.email or "Participant"


class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    latitude = Column(Float)
    longitude = Column(Float)
    address = Column(Text)
    certification_mode = Column(String(20), nullable=False, default=CertificationMode.OPERATOR)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    registrations = relationship("EventRegistration", back_populates="event")


class EventRegistration(Base):
    __tablename__ = "event_registrations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False)
    status = Column(String(20), nullable=False, default=RegistrationStatus.REGISTERED)
    # Single authoritative "certified" marker
    attended_at = Column(DateTime(timezone=True))
    validated_by = Column(Integer, ForeignKey("users.id"))
    certification_start_at = Column(DateTime(timezone=True))
    # Self-attestation evidence trail
    self_cert_note = Column(Text)
    self_cert_latitude = Column(Float)
    self_cert_longitude = Column(Float)
    self_cert_address = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('user_id', 'event_id', name='unique_user_event_registration'),
    )

    user = relationship("User", back_populates="registrations", foreign_keys=[user_id])
    event = relationship("Event", back_populates="registrations")
    token = relationship("VerificationToken", back_populates="registration", uselist=False)
    attachments = relationship("CertificationAttachment", back_populates="registration")


class VerificationToken(Base):
    """Proof of a passed face match, scanned by an organizer"""
    __tablename__ = "verification_tokens"

    id = Column(Integer, primary_key=True, index=True)
    registration_id = Column(Integer, ForeignKey("event_registrations.id"), nullable=False, unique=True)
    token = Column(String(128), nullable=False, unique=True)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    consumed = Column(Boolean, default=False, nullable=False)
    consumed_at = Column(DateTime(timezone=True))

    registration = relationship("EventRegistration", back_populates="token")


class CertificationAttachment(Base):
    __tablename__ = "certification_attachments"

    id = Column(Integer, primary_key=True, index=True)
    registration_id = Column(Integer, ForeignKey("event_registrations.id"), nullable=False)
    kind = Column(String(10), nullable=False)  # image, file
    storage_key = Column(String(512), nullable=False)
    public_url = Column(Text, nullable=False)
    uploaded_at = Column(DateTime(timezone=True))

    registration = relationship("EventRegistration", back_populates="attachments")


class CertificationLog(Base):
    """Append-only audit trail of certification actions"""
    __tablename__ = "certification_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"))
    event_id = Column(Integer, ForeignKey("events.id"))
    registration_id = Column(Integer, ForeignKey("event_registrations.id"))
    action = Column(String(50), nullable=False)   # face_match, token_issued, self_certification, organizer_scan
    status = Column(String(20), nullable=False)   # passed, failed, error, recorded, rejected
    method = Column(String(20), nullable=False)   # operator, self_attested
    latitude = Column(Float)
    longitude = Column(Float)
    details = Column("metadata", JSONType)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index('idx_cert_log_registration', 'registration_id'),
        Index('idx_cert_log_created', 'created_at'),
    )
