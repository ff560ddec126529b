# tests/test_allowance_service.py
from datetime import datetime, timezone

import pytest

from clinic_scheduler import models, schemas
from clinic_scheduler.services import allowance_service
from clinic_scheduler.services.allowance_service import (
    AllowanceError, apply_session_usage, create_initial_session_allowance, normalize_session_allowance,
    record_session_usage, refresh_all_allowances, refresh_session_allowance_if_needed, remaining_free_sessions,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _allowance(used=0, cap=500, next_reset=utc(2025, 1, 1), **extra):
    return schemas.SessionAllowance(
        annual_free_session_cap=cap,
        free_sessions_used=used,
        next_reset_at=next_reset,
        last_reset_at=utc(next_reset.year - 1, 1, 1),
        last_updated_at=utc(2024, 6, 1),
        **extra,
    )


def test_initial_allowance():
    allowance = create_initial_session_allowance(utc(2024, 6, 15, 10, 30))
    assert allowance.annual_free_session_cap == 500
    assert allowance.free_sessions_used == 0
    assert allowance.next_reset_at == utc(2025, 1, 1)
    assert allowance.last_reset_at == utc(2024, 1, 1)


def test_refresh_before_reset_changes_nothing_but_the_timestamp():
    now = utc(2024, 12, 31, 23, 59)
    refreshed, resets = refresh_session_allowance_if_needed(_allowance(used=42), now)
    assert resets == 0
    assert refreshed.free_sessions_used == 42
    assert refreshed.next_reset_at == utc(2025, 1, 1)
    assert refreshed.last_updated_at == now


def test_refresh_exactly_at_reset_time():
    refreshed, resets = refresh_session_allowance_if_needed(_allowance(used=42), utc(2025, 1, 1))
    assert resets == 1
    assert refreshed.free_sessions_used == 0
    assert refreshed.last_reset_at == utc(2025, 1, 1)
    assert refreshed.next_reset_at == utc(2026, 1, 1)


def test_refresh_catches_up_on_missed_years():
    stale = _allowance(used=310, next_reset=utc(2022, 1, 1))
    refreshed, resets = refresh_session_allowance_if_needed(stale, utc(2024, 6, 1))
    assert resets == 3
    assert refreshed.free_sessions_used == 0
    assert refreshed.last_reset_at == utc(2024, 1, 1)
    assert refreshed.next_reset_at == utc(2025, 1, 1)


def test_reset_keeps_pending_paid_sessions():
    stale = _allowance(used=500, next_reset=utc(2024, 1, 1), pending_paid_sessions=3, pending_charge_amount=150)
    refreshed, _ = refresh_session_allowance_if_needed(stale, utc(2024, 2, 1))
    assert refreshed.pending_paid_sessions == 3
    assert refreshed.pending_charge_amount == 150


def test_usage_under_cap_is_free():
    updated, was_free = apply_session_usage(_allowance(used=10), 80, utc(2024, 6, 1))
    assert was_free
    assert updated.free_sessions_used == 11
    assert updated.pending_paid_sessions == 0
    assert updated.pending_charge_amount == 0


def test_usage_over_cap_is_charged():
    allowance = _allowance(used=500)
    allowance, was_free = apply_session_usage(allowance, 75.5, utc(2024, 6, 1))
    assert not was_free
    allowance, _ = apply_session_usage(allowance, 24.5, utc(2024, 6, 2))
    assert allowance.free_sessions_used == 500
    assert allowance.pending_paid_sessions == 2
    assert allowance.pending_charge_amount == 100
    assert remaining_free_sessions(allowance) == 0


def test_usage_over_cap_without_cost_only_counts_the_session():
    allowance, was_free = apply_session_usage(_allowance(used=500), 0, utc(2024, 6, 1))
    assert not was_free
    assert allowance.pending_paid_sessions == 1
    assert allowance.pending_charge_amount == 0


def test_normalize_tolerates_bad_values():
    now = utc(2024, 6, 1)
    allowance = normalize_session_allowance(
        {"freeSessionsUsed": "12", "pendingPaidSessions": -4, "pendingChargeAmount": "abc", "nextResetAt": "not a date"},
        now,
    )
    assert allowance.annual_free_session_cap == 500
    assert allowance.free_sessions_used == 12
    assert allowance.pending_paid_sessions == 0
    assert allowance.pending_charge_amount == 0
    assert allowance.next_reset_at == utc(2025, 1, 1)


def test_normalize_reads_stored_document():
    original = _allowance(used=7)
    restored = normalize_session_allowance(original.to_document(), utc(2024, 6, 1))
    assert restored.model_dump() == original.model_dump()


def test_stored_document_uses_camel_case():
    document = _allowance(used=7).to_document()
    assert document["freeSessionsUsed"] == 7
    assert document["nextResetAt"].startswith("2025-01-01T00:00:00")


# --- Database-backed ledger ---

def test_record_session_usage_updates_capped_patient(db_session, make_patient):
    make_patient("p-1", patient_type="DYES")
    now = utc(2024, 6, 1)

    usage = record_session_usage(db_session, "p-1", "apt-1", 0, now)
    db_session.commit()

    assert usage.was_free
    assert usage.remaining_free_sessions == 499
    patient = db_session.get(models.Patient, "p-1")
    assert patient.session_allowance["freeSessionsUsed"] == 1
    assert patient.last_completed_appointment_id == "apt-1"


def test_record_session_usage_applies_due_reset_first(db_session, make_patient):
    stale = _allowance(used=500, next_reset=utc(2024, 1, 1)).to_document()
    make_patient("p-1", patient_type="DYES", session_allowance=stale)

    usage = record_session_usage(db_session, "p-1", "apt-1", 90, utc(2024, 3, 1))

    assert usage.was_free
    assert usage.allowance.free_sessions_used == 1
    assert usage.allowance.next_reset_at == utc(2025, 1, 1)


def test_record_session_usage_ignores_uncapped_patients(db_session, make_patient):
    make_patient("p-2", patient_type="PRIVATE")
    assert record_session_usage(db_session, "p-2", "apt-1", 50, utc(2024, 6, 1)) is None
    assert db_session.get(models.Patient, "p-2").session_allowance is None


def test_record_session_usage_unknown_patient(db_session):
    with pytest.raises(AllowanceError):
        record_session_usage(db_session, "ghost", "apt-1", 0, utc(2024, 6, 1))


def test_refresh_all_allowances(db_session, make_patient):
    make_patient("fresh", patient_type="DYES", session_allowance=_allowance(used=3).to_document())
    make_patient("stale", patient_type="DYES", session_allowance=_allowance(used=9, next_reset=utc(2023, 1, 1)).to_document())
    make_patient("missing", patient_type="DYES")
    make_patient("private", patient_type="PRIVATE")

    report = refresh_all_allowances(db_session, utc(2024, 6, 1), batch_size=1)

    assert report.patients == 3
    assert report.records_updated == 2
    assert report.resets_applied == 2
    assert report.initialized == 1
    assert db_session.get(models.Patient, "stale").session_allowance["freeSessionsUsed"] == 0
    assert db_session.get(models.Patient, "fresh").session_allowance["freeSessionsUsed"] == 3
    assert db_session.get(models.Patient, "private").session_allowance is None


def test_capped_benefit_type_comes_from_settings(make_patient, db_session, monkeypatch):
    patient = make_patient("p-3", patient_type="VIP")
    assert not allowance_service.is_capped_benefit(patient)
    monkeypatch.setattr(allowance_service.get_settings(), "capped_benefit_patient_type", "VIP")
    assert allowance_service.is_capped_benefit(patient)
