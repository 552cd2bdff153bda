import asyncio

import httpx
import pytest
from conftest import VENUE, FakeCamera, FakeProvider, eligible_result

import presence_cert.main as main
from presence_cert.db.models import (
    CertificationMode, EventRegistration, RegistrationStatus, VerificationToken
)
from presence_cert.dependencies import get_db
from presence_cert.flow import (
    CertificationPath, FlowState, HttpCertificationBackend, LocalCertificationBackend,
    RegistrationContext, VerificationOrchestrator
)
from presence_cert.services.eligibility_service import EligibilityEvaluator
from presence_cert.services.match_oracle_service import MatchOracleService, match_oracle_service
from presence_cert.services.token_service import TokenStore


async def no_sleep(delay):
    return None


def context_for(registration, path):
    return RegistrationContext(
        registration_id=registration.id,
        user_id=registration.user_id,
        event_id=registration.event_id,
        path=path
    )


class GatedProvider(FakeProvider):
    """Provider that blocks until released, like a slow biometric API."""

    def __init__(self, score=90.0):
        super().__init__(score=score)
        self.release = asyncio.Event()

    async def compare(self, live_image, reference_image):
        await self.release.wait()
        return await super().compare(live_image, reference_image)


@pytest.fixture()
def local_backend(session_factory, oracle):
    return LocalCertificationBackend(session_factory, oracle=oracle, tokens=oracle.tokens)


async def test_local_operator_flow_then_reopen_shows_same_token(local_backend, make_registration):
    registration = make_registration()
    context = context_for(registration, CertificationPath.OPERATOR)

    flow = VerificationOrchestrator(context, local_backend, FakeCamera(), sleep=no_sleep)
    await flow.open(eligible_result())
    await flow.start_capture()
    assert await flow.capture() == FlowState.QR_ISSUED
    await flow.close()

    camera = FakeCamera()
    reopened = VerificationOrchestrator(context, local_backend, camera, sleep=no_sleep)
    assert await reopened.open(None) == FlowState.QR_ISSUED
    assert reopened.token == flow.token
    assert camera.opened == 0


async def test_close_during_match_still_persists_token(session_factory, make_registration, db):
    registration = make_registration()
    provider = GatedProvider()
    oracle = MatchOracleService(
        provider=provider, tokens=TokenStore(),
        evaluator=EligibilityEvaluator(radius_meters=100), threshold=70
    )
    backend = LocalCertificationBackend(session_factory, oracle=oracle, tokens=oracle.tokens)
    camera = FakeCamera()
    flow = VerificationOrchestrator(
        context_for(registration, CertificationPath.OPERATOR), backend, camera, sleep=no_sleep
    )
    await flow.open(eligible_result())
    await flow.start_capture()

    capturing = asyncio.ensure_future(flow.capture())
    while flow.state != FlowState.PROCESSING:
        await asyncio.sleep(0)
    await flow.close()
    assert await capturing == FlowState.CLOSED
    assert camera.active == 0

    provider.release.set()
    response = await flow.pending_match

    assert response.token
    assert db.query(VerificationToken).filter_by(registration_id=registration.id).one().token == response.token


async def test_local_self_certification_flow(local_backend, make_registration, db):
    registration = make_registration(mode=CertificationMode.SELF_ATTESTED)
    flow = VerificationOrchestrator(
        context_for(registration, CertificationPath.SELF_ATTESTED), local_backend, FakeCamera(), sleep=no_sleep
    )
    await flow.open(eligible_result())
    await flow.start_capture()
    assert await flow.capture() == FlowState.RECAP

    flow.affirm_declaration()
    assert await flow.confirm() is True

    db.expire_all()
    row = db.get(EventRegistration, registration.id)
    assert row.status == RegistrationStatus.SELF_CERTIFIED
    assert row.attended_at is not None
    assert row.certification_start_at is not None


async def test_local_backend_refuses_missing_declaration(local_backend, make_registration):
    from presence_cert.schemas import SelfCertificationRequest
    from presence_cert.timeutils import utc_now

    registration = make_registration(mode=CertificationMode.SELF_ATTESTED)
    response = await local_backend.record_self_certification(
        registration.id, SelfCertificationRequest(capture_started_at=utc_now(), honor_declaration=False)
    )

    assert response.outcome == "declaration_required"
    assert not response.recorded


@pytest.fixture()
def http_backend(session_factory, monkeypatch):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    main.app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(match_oracle_service, "provider", FakeProvider(score=95.0))

    yield HttpCertificationBackend(
        base_url="http://testserver", transport=httpx.ASGITransport(app=main.app)
    )

    main.app.dependency_overrides.clear()


async def test_http_operator_flow(http_backend, make_registration):
    registration = make_registration()
    flow = VerificationOrchestrator(
        context_for(registration, CertificationPath.OPERATOR), http_backend, FakeCamera(), sleep=no_sleep
    )

    assert await flow.open(eligible_result()) == FlowState.INSTRUCTIONS
    await flow.start_capture()
    assert await flow.capture() == FlowState.QR_ISSUED

    live = await http_backend.get_live_token(registration.id)
    assert live.token == flow.token


async def test_http_self_certification_flow(http_backend, make_registration, db):
    registration = make_registration(mode=CertificationMode.SELF_ATTESTED)
    flow = VerificationOrchestrator(
        context_for(registration, CertificationPath.SELF_ATTESTED), http_backend, FakeCamera(), sleep=no_sleep
    )
    await flow.open(eligible_result())
    await flow.start_capture()
    await flow.capture()
    flow.set_note("By the stage")
    flow.affirm_declaration()

    assert await flow.confirm() is True
    assert flow.result.recorded

    db.expire_all()
    assert db.get(EventRegistration, registration.id).self_cert_note == "By the stage"


async def test_http_self_certification_refusal_is_mapped(http_backend, make_registration):
    from presence_cert.schemas import SelfCertificationRequest
    from presence_cert.timeutils import utc_now

    registration = make_registration(mode=CertificationMode.OPERATOR)

    response = await http_backend.record_self_certification(
        registration.id,
        SelfCertificationRequest(capture_started_at=utc_now(), honor_declaration=True, latitude=VENUE[0])
    )

    assert response.outcome == "not_allowed"
    assert not response.recorded


async def test_http_missing_token_is_none(http_backend, make_registration):
    registration = make_registration()
    assert await http_backend.get_live_token(registration.id) is None


async def test_http_self_certification_without_match_requires_capture(http_backend, make_registration):
    from presence_cert.schemas import SelfCertificationRequest
    from presence_cert.timeutils import utc_now

    registration = make_registration(mode=CertificationMode.SELF_ATTESTED)

    response = await http_backend.record_self_certification(
        registration.id, SelfCertificationRequest(capture_started_at=utc_now(), honor_declaration=True)
    )

    assert response.outcome == "match_required"
    assert not response.recorded
