from datetime import timedelta

from conftest import LIVE_IMAGE, VENUE

from presence_cert.db.models import CertificationLog, CertificationMode, VerificationToken
from presence_cert.schemas import FaceMatchRequest
from presence_cert.services.match_oracle_service import decode_live_image
from presence_cert.services.token_service import TokenIssuanceError


def request_for(registration, **overrides):
    values = dict(
        user_id=registration.user_id,
        event_id=registration.event_id,
        registration_id=registration.id,
        live_image=LIVE_IMAGE,
    )
    values.update(overrides)
    return FaceMatchRequest(**values)


def test_decode_live_image_tolerates_data_url_prefix():
    assert decode_live_image(LIVE_IMAGE) == decode_live_image(LIVE_IMAGE.split(",", 1)[1])
    assert decode_live_image("not base64 !!") is None
    assert decode_live_image("") is None


async def test_pass_issues_token_for_operator_event(db, make_registration, oracle):
    registration = make_registration()

    response = await oracle.face_match(db, request_for(registration))

    assert response.success and response.passed
    assert response.score == 90.0
    assert response.token and not response.cached
    assert db.query(VerificationToken).count() == 1


async def test_second_pass_returns_same_token_cached(db, make_registration, oracle):
    registration = make_registration()

    first = await oracle.face_match(db, request_for(registration))
    second = await oracle.face_match(db, request_for(registration))

    assert second.cached
    assert second.token == first.token
    assert db.query(VerificationToken).count() == 1


async def test_low_score_is_soft_failure(db, make_registration, oracle, provider):
    provider.score = 62.0
    registration = make_registration()

    response = await oracle.face_match(db, request_for(registration))

    assert response.success and not response.passed
    assert response.score == 62.0
    assert response.token is None
    assert db.query(VerificationToken).count() == 0
    assert db.query(CertificationLog).filter_by(status="failed").count() == 1


async def test_self_attested_pass_has_no_token(db, make_registration, oracle):
    registration = make_registration(mode=CertificationMode.SELF_ATTESTED)

    response = await oracle.face_match(db, request_for(registration))

    assert response.passed
    assert response.token is None
    assert db.query(VerificationToken).count() == 0


async def test_expired_identity_needs_reverification(db, make_registration, oracle, provider):
    registration = make_registration(verified_days_ago=400)

    response = await oracle.face_match(db, request_for(registration))

    assert not response.success
    assert response.needs_reverification
    assert provider.calls == 0


async def test_unverified_user_needs_reverification(db, make_registration, oracle):
    registration = make_registration(id_verified=False)

    response = await oracle.face_match(db, request_for(registration))

    assert response.needs_reverification


async def test_provider_failure_is_hard_failure(db, make_registration, oracle, provider):
    provider.error = "Face verification failed."
    registration = make_registration()

    response = await oracle.face_match(db, request_for(registration))

    assert not response.success
    assert response.error_code == "provider_error"
    assert db.query(CertificationLog).filter_by(status="error").count() == 1


async def test_outside_window_is_refused(db, make_registration, oracle, provider):
    registration = make_registration(starts_in=timedelta(hours=3))

    response = await oracle.face_match(db, request_for(registration))

    assert response.error_code == "outside_window"
    assert provider.calls == 0


async def test_outside_radius_is_refused(db, make_registration, oracle):
    registration = make_registration()

    response = await oracle.face_match(
        db, request_for(registration, latitude=VENUE[0] + 0.05, longitude=VENUE[1])
    )

    assert response.error_code == "outside_radius"


async def test_event_without_coordinates_is_not_offered(db, make_registration, oracle):
    registration = make_registration(coordinate=None)

    response = await oracle.face_match(db, request_for(registration))

    assert response.error_code == "not_offered"


async def test_mismatched_user_is_not_found(db, make_registration, oracle):
    registration = make_registration()

    response = await oracle.face_match(db, request_for(registration, user_id=registration.user_id + 100))

    assert response.error_code == "registration_not_found"


async def test_invalid_image(db, make_registration, oracle):
    registration = make_registration()

    response = await oracle.face_match(db, request_for(registration, live_image="%%%"))

    assert response.error_code == "invalid_image"


async def test_token_failure_after_pass_is_reported_as_passed(db, make_registration, oracle, monkeypatch):
    registration = make_registration()

    def broken(*args, **kwargs):
        raise TokenIssuanceError("disk full")

    monkeypatch.setattr(oracle.tokens, "issue_or_get_token", broken)

    response = await oracle.face_match(db, request_for(registration))

    assert not response.success
    assert response.passed
    assert response.error_code == "token_issuance_failed"
