import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from presence_cert.db import models
from presence_cert.db.database import Base
from presence_cert.schemas import FaceMatchResponse, SelfCertificationResponse
from presence_cert.services.certification_log_service import certification_log_service
from presence_cert.services.eligibility_service import (
    EligibilityEvaluator, EventEnvelope, Position, PositionReading
)
from presence_cert.services.face_match_provider import FaceMatchProviderError
from presence_cert.services.match_oracle_service import MatchOracleService
from presence_cert.services.token_service import IssuedToken, TokenStore
from presence_cert.timeutils import utc_now

VENUE = (48.8566, 2.3522)
LIVE_IMAGE = "data:image/jpeg;base64,/9j/4AAQSkZJRgABAQ=="


@pytest.fixture()
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'presence_test.db'}",
        connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def make_registration(db):
    """Create a user, an event running now and a registration between them."""
    counter = {"n": 0}

    def _make(
        *,
        mode=models.CertificationMode.OPERATOR,
        starts_in=timedelta(hours=-1),
        lasts=timedelta(hours=2),
        coordinate=VENUE,
        status=models.RegistrationStatus.REGISTERED,
        id_verified=True,
        verified_days_ago=10,
        selfie_url="https://storage.example.org/selfies/1.jpg"
    ) -> models.EventRegistration:
        counter["n"] += 1
        now = utc_now()
        user = models.User(
            email=f"user{counter['n']}@example.org",
            first_name="Ada",
            last_name=f"Lovelace{counter['n']}",
            id_verified=id_verified,
            id_verified_at=now - timedelta(days=verified_days_ago) if id_verified else None,
            reference_selfie_url=selfie_url
        )
        start = now + starts_in
        event = models.Event(
            name=f"Event {counter['n']}",
            start_date=start,
            end_date=start + lasts,
            latitude=coordinate[0] if coordinate else None,
            longitude=coordinate[1] if coordinate else None,
            certification_mode=mode
        )
        db.add_all([user, event])
        db.flush()
        registration = models.EventRegistration(user_id=user.id, event_id=event.id, status=status)
        db.add(registration)
        db.commit()
        db.refresh(registration)
        return registration

    return _make


class FakeProvider:
    """Face match provider returning a fixed score."""

    def __init__(self, score=90.0, error=None):
        self.score = score
        self.error = error
        self.calls = 0

    async def fetch_reference(self, url):
        return b"reference"

    async def compare(self, live_image, reference_image):
        self.calls += 1
        if self.error:
            raise FaceMatchProviderError(self.error)
        return self.score


@pytest.fixture()
def provider():
    return FakeProvider()


@pytest.fixture()
def oracle(provider):
    return MatchOracleService(
        provider=provider,
        tokens=TokenStore(),
        evaluator=EligibilityEvaluator(radius_meters=100, open_minutes_before_start=0),
        threshold=70.0
    )


def eligible_result(now=None):
    now = now or utc_now()
    envelope = EventEnvelope(
        start_time=now - timedelta(hours=1),
        end_time=now + timedelta(hours=1),
        latitude=VENUE[0],
        longitude=VENUE[1]
    )
    reading = PositionReading.available(Position(VENUE[0], VENUE[1], captured_at=now))
    return EligibilityEvaluator(radius_meters=100).evaluate(envelope, now, reading)


class FakeCamera:
    """Capture source; counts how many streams are currently open."""

    def __init__(self, open_error=None, capture_error=None, hang=False, frame=b"\xff\xd8\xff\xe0jpeg"):
        self.open_error = open_error
        self.capture_error = capture_error
        self.hang = hang
        self.frame = frame
        self.opened = 0
        self.active = 0
        self.captures = 0

    @asynccontextmanager
    async def open(self):
        self.opened += 1
        if self.open_error:
            raise self.open_error
        self.active += 1
        try:
            yield self
        finally:
            self.active -= 1

    async def capture_still(self):
        self.captures += 1
        if self.hang:
            await asyncio.Event().wait()
        if self.capture_error:
            raise self.capture_error
        return self.frame


class ScriptedBackend:
    """Backend replaying queued responses; an Exception in the queue is raised."""

    def __init__(self, matches=(), records=(), reissues=(), live_token=None, address=None):
        self.matches = list(matches)
        self.records = list(records)
        self.reissues = list(reissues)
        self.live_token = live_token
        self.address = address
        self.gate = None
        self.match_calls = []
        self.record_calls = []
        self.reissue_calls = []
        self.geocode_calls = []

    @staticmethod
    def _next(queue):
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def face_match(self, request):
        self.match_calls.append(request)
        if self.gate is not None:
            await self.gate.wait()
        return self._next(self.matches)

    async def get_live_token(self, registration_id):
        return self.live_token

    async def reissue_token(self, registration_id):
        self.reissue_calls.append(registration_id)
        return self._next(self.reissues)

    async def record_self_certification(self, registration_id, request):
        self.record_calls.append(request)
        # Yield like a real round trip so concurrent callers interleave
        await asyncio.sleep(0)
        return self._next(self.records)

    async def reverse_geocode(self, latitude, longitude):
        self.geocode_calls.append((latitude, longitude))
        return self.address


def passed(token="a" * 64, cached=False, score=91.0):
    return FaceMatchResponse(success=True, passed=True, score=score, token=token, cached=cached)


def recorded(registration_id=1):
    return SelfCertificationResponse(
        registration_id=registration_id, outcome="recorded", recorded=True, attended_at=utc_now()
    )


def live_token(registration_id=1, token="b" * 64):
    return IssuedToken(registration_id=registration_id, token=token, issued_at=utc_now())


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def fake_sleep(sleeps):
    async def _sleep(delay):
        sleeps.append(delay)
    return _sleep


def log_passed_match(db, registration, age=timedelta(0)):
    """Leave the audit row a passed face match writes, optionally aged."""
    entry_id = certification_log_service.log(
        db, action="face_match", status="passed", method=models.CertificationMode.SELF_ATTESTED,
        user_id=registration.user_id, event_id=registration.event_id,
        registration_id=registration.id, details={"score": 90.0}
    )
    if age:
        entry = db.get(models.CertificationLog, entry_id)
        entry.created_at = utc_now() - age
        db.commit()
