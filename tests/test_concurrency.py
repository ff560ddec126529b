# tests/test_concurrency.py
"""
Two sessions on one file-backed SQLite database. SQLite ignores FOR UPDATE,
so these interleavings rely on the row versions of patients and clinicians.
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from clinic_scheduler import models, schemas
from clinic_scheduler.database import Base
from clinic_scheduler.services import allowance_service, booking_service

from conftest import MONDAY, WEEKDAYS_NINE_TO_FIVE

NOW = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def sessions(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'clinic.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    setup = Session()
    setup.add(models.Clinician(id="dr-smith", name="Dr. Smith",
                               weekly_availability=WEEKDAYS_NINE_TO_FIVE, date_availability={}))
    setup.add(models.Patient(
        id="p-1", name="Jane Doe", patient_type="DYES",
        session_allowance=allowance_service.create_initial_session_allowance(NOW).to_document(),
    ))
    for apt_id, time in (("apt-1", "09:00"), ("apt-2", "10:00")):
        setup.add(models.Appointment(
            id=apt_id, patient_id="p-1", patient_name="Jane Doe",
            clinician_id="dr-smith", clinician_name="Dr. Smith",
            date=MONDAY, time=time, status=models.AppointmentStatus.pending,
        ))
    setup.commit()
    setup.close()

    first, second = Session(), Session()
    try:
        yield first, second
    finally:
        first.close()
        second.close()
        engine.dispose()


def _free_sessions_used(db, patient_id="p-1"):
    db.expire_all()
    patient = db.query(models.Patient).filter(models.Patient.id == patient_id).one()
    return patient.session_allowance["freeSessionsUsed"]


def test_stale_allowance_write_is_refused(sessions):
    first, second = sessions
    allowance_service.record_session_usage(first, "p-1", "apt-1", 0, NOW)
    allowance_service.record_session_usage(second, "p-1", "apt-2", 0, NOW)

    first.commit()
    with pytest.raises(StaleDataError):
        second.commit()
    second.rollback()

    assert _free_sessions_used(second) == 1


def test_interleaved_completions_count_both_sessions(sessions, monkeypatch):
    first, second = sessions
    record = allowance_service.record_session_usage
    interleaved = []

    def record_while_another_completion_commits(db, *args, **kwargs):
        usage = record(db, *args, **kwargs)
        if not interleaved:
            interleaved.append(True)
            booking_service.complete_appointment(first, "apt-1", NOW)
        return usage

    monkeypatch.setattr(allowance_service, "record_session_usage", record_while_another_completion_commits)

    appointment, usage = booking_service.complete_appointment(second, "apt-2", NOW)

    assert appointment.status == models.AppointmentStatus.completed
    assert usage.allowance.free_sessions_used == 2
    assert _free_sessions_used(first) == 2


def test_overlapping_booking_committed_in_between_is_rejected(sessions, monkeypatch):
    first, second = sessions
    evaluate = booking_service.evaluate_candidate
    interleaved = []

    def evaluate_while_another_booking_commits(db, *args, **kwargs):
        rejection = evaluate(db, *args, **kwargs)
        if not interleaved:
            interleaved.append(True)
            result = booking_service.book_appointment(first, schemas.AppointmentCreate(
                patient_id="p-1", clinician_id="dr-smith", date=MONDAY, time="14:00", duration=60,
            ))
            assert result.ok
        return rejection

    monkeypatch.setattr(booking_service, "evaluate_candidate", evaluate_while_another_booking_commits)

    result = booking_service.book_appointment(second, schemas.AppointmentCreate(
        patient_id="p-1", clinician_id="dr-smith", date=MONDAY, time="14:30",
    ))

    assert not result.ok
    assert result.rejection.conflict.has_conflict
    second.expire_all()
    active = second.query(models.Appointment).filter(
        models.Appointment.date == MONDAY,
        models.Appointment.time.in_(["14:00", "14:30"]),
    ).all()
    assert [apt.time for apt in active] == ["14:00"]


def test_clinician_version_moves_with_each_booking(sessions):
    first, _ = sessions
    clinician = first.query(models.Clinician).filter(models.Clinician.id == "dr-smith").one()
    assert clinician.version_id == 1

    result = booking_service.book_appointment(first, schemas.AppointmentCreate(
        patient_id="p-1", clinician_id="dr-smith", date=MONDAY, time="15:00",
    ))

    assert result.ok
    first.refresh(clinician)
    assert clinician.version_id == 2
