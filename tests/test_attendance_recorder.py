import threading
from datetime import timedelta

import pytest
from conftest import log_passed_match

from presence_cert.db.models import (
    CertificationAttachment, CertificationLog, CertificationMode, EventRegistration,
    RegistrationStatus
)
from presence_cert.services.attendance_service import (
    AttendanceRecorder, AttendanceWriteError, RecordOutcome, SelfCertificationRecord,
    UploadedAttachment
)
from presence_cert.timeutils import as_utc, utc_now


def record(**overrides):
    values = dict(
        capture_started_at=utc_now() - timedelta(minutes=2),
        latitude=48.8566,
        longitude=2.3522,
        address="Place de l'Hotel de Ville, 75004 Paris",
        note="Front row",
    )
    values.update(overrides)
    return SelfCertificationRecord(**values)


def test_records_self_certification(db, make_registration):
    registration = make_registration(mode=CertificationMode.SELF_ATTESTED)
    log_passed_match(db, registration)
    captured = utc_now() - timedelta(minutes=3)
    attachment = UploadedAttachment("image", f"{registration.id}/abc.jpg", "https://cdn/abc.jpg")

    result = AttendanceRecorder().record_self_certification(
        db, registration.id, record(capture_started_at=captured, attachments=[attachment])
    )

    assert result.ok
    db.expire_all()
    row = db.get(EventRegistration, registration.id)
    assert row.status == RegistrationStatus.SELF_CERTIFIED
    assert as_utc(row.attended_at) == result.attended_at
    assert as_utc(row.certification_start_at) == captured
    assert row.validated_by is None
    assert row.self_cert_address.startswith("Place")
    assert db.query(CertificationAttachment).filter_by(registration_id=registration.id).count() == 1
    assert db.query(CertificationLog).filter_by(action="self_certification", status="recorded").count() == 1


def test_second_write_reports_already_certified(db, make_registration):
    registration = make_registration(mode=CertificationMode.SELF_ATTESTED)
    log_passed_match(db, registration)
    recorder = AttendanceRecorder()

    first = recorder.record_self_certification(db, registration.id, record())
    second = recorder.record_self_certification(db, registration.id, record(note="again"))

    assert first.outcome == RecordOutcome.RECORDED
    assert second.outcome == RecordOutcome.ALREADY_CERTIFIED
    assert second.attended_at == first.attended_at
    db.expire_all()
    assert db.get(EventRegistration, registration.id).self_cert_note == "Front row"


def test_operator_event_is_refused(db, make_registration):
    registration = make_registration(mode=CertificationMode.OPERATOR)

    result = AttendanceRecorder().record_self_certification(db, registration.id, record())

    assert result.outcome == RecordOutcome.NOT_ALLOWED
    db.expire_all()
    assert db.get(EventRegistration, registration.id).attended_at is None


def test_cancelled_registration_is_refused(db, make_registration):
    registration = make_registration(
        mode=CertificationMode.SELF_ATTESTED, status=RegistrationStatus.CANCELLED
    )

    result = AttendanceRecorder().record_self_certification(db, registration.id, record())

    assert result.outcome == RecordOutcome.NOT_ALLOWED


def test_write_without_face_match_is_refused(db, make_registration):
    registration = make_registration(mode=CertificationMode.SELF_ATTESTED)

    result = AttendanceRecorder().record_self_certification(db, registration.id, record())

    assert result.outcome == RecordOutcome.MATCH_REQUIRED
    db.expire_all()
    row = db.get(EventRegistration, registration.id)
    assert row.attended_at is None
    assert row.status == RegistrationStatus.REGISTERED


def test_expired_face_match_is_refused(db, make_registration):
    registration = make_registration(mode=CertificationMode.SELF_ATTESTED)
    log_passed_match(db, registration, age=timedelta(minutes=31))

    result = AttendanceRecorder(pass_reuse_seconds=1800).record_self_certification(db, registration.id, record())

    assert result.outcome == RecordOutcome.MATCH_REQUIRED


def test_failed_face_match_does_not_count(db, make_registration):
    from presence_cert.services.certification_log_service import certification_log_service

    registration = make_registration(mode=CertificationMode.SELF_ATTESTED)
    certification_log_service.log(
        db, action="face_match", status="failed", method=CertificationMode.SELF_ATTESTED,
        registration_id=registration.id
    )

    result = AttendanceRecorder().record_self_certification(db, registration.id, record())

    assert result.outcome == RecordOutcome.MATCH_REQUIRED


def test_write_after_event_end_is_refused(db, make_registration):
    registration = make_registration(
        mode=CertificationMode.SELF_ATTESTED, starts_in=timedelta(hours=-3), lasts=timedelta(hours=1)
    )
    log_passed_match(db, registration)

    result = AttendanceRecorder().record_self_certification(db, registration.id, record())

    assert result.outcome == RecordOutcome.NOT_ALLOWED
    assert "window" in result.message


def test_unknown_registration(db):
    result = AttendanceRecorder().record_self_certification(db, 12345, record())
    assert result.outcome == RecordOutcome.NOT_FOUND


def test_failed_write_leaves_registration_untouched(db, make_registration, monkeypatch):
    registration = make_registration(mode=CertificationMode.SELF_ATTESTED)
    log_passed_match(db, registration)

    def broken_log(*args, **kwargs):
        raise RuntimeError("audit table unavailable")

    from presence_cert.services import attendance_service
    monkeypatch.setattr(attendance_service.certification_log_service, "log", broken_log)

    with pytest.raises(AttendanceWriteError):
        AttendanceRecorder().record_self_certification(db, registration.id, record())

    db.expire_all()
    row = db.get(EventRegistration, registration.id)
    assert row.attended_at is None
    assert row.status == RegistrationStatus.REGISTERED


def test_concurrent_confirmations_record_once(session_factory, make_registration):
    registration = make_registration(mode=CertificationMode.SELF_ATTESTED)
    with session_factory() as session:
        log_passed_match(session, registration)
    recorder = AttendanceRecorder()
    outcomes, errors = [], []
    barrier = threading.Barrier(6)

    def confirm():
        session = session_factory()
        try:
            barrier.wait()
            outcomes.append(recorder.record_self_certification(session, registration.id, record()).outcome)
        except Exception as e:  # surfaced by the assertion below
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=confirm) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    assert outcomes.count(RecordOutcome.RECORDED) == 1
    assert outcomes.count(RecordOutcome.ALREADY_CERTIFIED) == 5
