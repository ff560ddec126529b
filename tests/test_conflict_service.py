# tests/test_conflict_service.py
from clinic_scheduler import schemas
from clinic_scheduler.services.conflict_service import (
    active_appointments_for_clinician, check_appointment_conflict, describe_conflict
)


def _apt(apt_id, time, clinician_id="dr-smith", date="2024-03-04", duration=None, status="pending"):
    return {
        "id": apt_id,
        "clinician_id": clinician_id,
        "date": date,
        "time": time,
        "duration": duration,
        "status": status,
        "patient_name": f"Patient {apt_id}",
    }


def _candidate(time, clinician_id="dr-smith", date="2024-03-04", duration=None, exclude_id=None):
    return schemas.ConflictCandidate(
        clinician_id=clinician_id, date=date, time=time, duration=duration, exclude_id=exclude_id
    )


def test_empty_calendar_has_no_conflict():
    result = check_appointment_conflict([], _candidate("10:00"))
    assert not result.has_conflict
    assert result.conflicting_appointments == []


def test_overlap_is_reported_with_the_clashing_appointment():
    existing = [_apt("a1", "10:00", duration=60), _apt("a2", "14:00")]
    result = check_appointment_conflict(existing, _candidate("10:30"))
    assert result.has_conflict
    assert [apt.id for apt in result.conflicting_appointments] == ["a1"]


def test_every_overlapping_appointment_is_listed():
    existing = [_apt("a1", "10:00"), _apt("a2", "10:30"), _apt("a3", "11:30")]
    result = check_appointment_conflict(existing, _candidate("10:15", duration=45))
    assert [apt.id for apt in result.conflicting_appointments] == ["a1", "a2"]


def test_touching_boundaries_do_not_conflict():
    existing = [_apt("a1", "10:00")]
    assert not check_appointment_conflict(existing, _candidate("10:30")).has_conflict
    assert not check_appointment_conflict(existing, _candidate("09:30")).has_conflict


def test_cancelled_appointments_never_conflict():
    existing = [_apt("a1", "10:00", status="cancelled")]
    assert not check_appointment_conflict(existing, _candidate("10:00")).has_conflict


def test_completed_and_ongoing_appointments_still_conflict():
    existing = [_apt("a1", "10:00", status="completed"), _apt("a2", "11:00", status="ongoing")]
    assert check_appointment_conflict(existing, _candidate("10:00")).has_conflict
    assert check_appointment_conflict(existing, _candidate("11:15")).has_conflict


def test_other_clinicians_are_ignored():
    existing = [_apt("a1", "10:00", clinician_id="dr-jones")]
    assert not check_appointment_conflict(existing, _candidate("10:00")).has_conflict


def test_excluded_appointment_does_not_conflict_with_itself():
    existing = [_apt("a1", "10:00")]
    result = check_appointment_conflict(existing, _candidate("10:15", exclude_id="a1"))
    assert not result.has_conflict


def test_existing_appointment_without_duration_uses_default():
    existing = [_apt("a1", "10:00")]
    assert check_appointment_conflict(existing, _candidate("10:29", duration=15)).has_conflict
    assert not check_appointment_conflict(existing, _candidate("10:30", duration=15)).has_conflict
    assert check_appointment_conflict(existing, _candidate("10:30", duration=15), default_duration=45).has_conflict


def test_active_appointments_for_clinician_filters():
    appointments = [
        _apt("a1", "09:00"),
        _apt("a2", "10:00", status="cancelled"),
        _apt("a3", "11:00", clinician_id="dr-jones"),
        _apt("a4", "12:00"),
    ]
    active = active_appointments_for_clinician(appointments, "dr-smith", exclude_id="a4")
    assert [apt.id for apt in active] == ["a1"]


def test_describe_conflict_names_the_clashing_appointments():
    existing = [_apt("a1", "10:00")]
    message = describe_conflict(check_appointment_conflict(existing, _candidate("10:00")))
    assert "Patient a1 at 10:00 on 2024-03-04" in message
    assert describe_conflict(schemas.ConflictResult(has_conflict=False)) == "No conflicts detected"
