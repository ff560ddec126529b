# clinic_scheduler/services/allowance_service.py
"""
Annual free-session allowance for capped-benefit patients.

The allowance rolls over every January 1st (UTC). Rollover is lazy: it is
applied whenever the allowance is read, and catches up on every missed year.
"now" is always passed in by the caller.
"""
import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from .. import models, schemas
from ..config import get_settings

logger = structlog.get_logger(__name__)


class AllowanceError(Exception):
    pass


class AllowanceTransactionError(AllowanceError):
    """The read-modify-write could not be committed after all retries."""


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def upcoming_january_first_utc(from_date: datetime) -> datetime:
    from_date = _utc(from_date)
    return datetime(from_date.year + 1, 1, 1, tzinfo=timezone.utc)


def current_january_first_utc(from_date: datetime) -> datetime:
    from_date = _utc(from_date)
    return datetime(from_date.year, 1, 1, tzinfo=timezone.utc)


def is_capped_benefit(patient: models.Patient) -> bool:
    return bool(patient and patient.patient_type == get_settings().capped_benefit_patient_type)


def create_initial_session_allowance(now: datetime, cap: Optional[int] = None) -> schemas.SessionAllowance:
    now = _utc(now)
    return schemas.SessionAllowance(
        annual_free_session_cap=cap if cap is not None else get_settings().annual_free_session_cap,
        free_sessions_used=0,
        pending_paid_sessions=0,
        pending_charge_amount=0,
        next_reset_at=upcoming_january_first_utc(now),
        last_reset_at=current_january_first_utc(now),
        last_updated_at=now,
    )


def _number(value: Any, default: float = 0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def _timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return _utc(value)
    if isinstance(value, str) and value:
        try:
            return _utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def normalize_session_allowance(raw: Optional[Dict[str, Any]], now: datetime) -> schemas.SessionAllowance:
    """Tolerant parse of a stored allowance document."""
    now = _utc(now)
    if not raw:
        return create_initial_session_allowance(now)

    cap = int(_number(raw.get("annualFreeSessionCap"))) or get_settings().annual_free_session_cap
    return schemas.SessionAllowance(
        annual_free_session_cap=cap,
        free_sessions_used=max(0, int(_number(raw.get("freeSessionsUsed")))),
        pending_paid_sessions=max(0, int(_number(raw.get("pendingPaidSessions")))),
        pending_charge_amount=max(0.0, _number(raw.get("pendingChargeAmount"))),
        # An unreadable reset date falls back to the coming January 1st
        next_reset_at=_timestamp(raw.get("nextResetAt")) or upcoming_january_first_utc(now),
        last_reset_at=_timestamp(raw.get("lastResetAt")),
        last_updated_at=_timestamp(raw.get("lastUpdatedAt")) or now,
    )


def refresh_session_allowance_if_needed(
    allowance: schemas.SessionAllowance,
    now: datetime,
) -> Tuple[schemas.SessionAllowance, int]:
    """Apply every reset due by ``now``. Returns the new allowance and the number of resets."""
    now = _utc(now)
    updated = allowance.model_copy()

    resets_applied = 0
    next_reset = _utc(allowance.next_reset_at)
    while now >= next_reset:
        resets_applied += 1
        updated.free_sessions_used = 0
        updated.last_reset_at = next_reset
        next_reset = upcoming_january_first_utc(next_reset)

    if resets_applied:
        updated.next_reset_at = next_reset
    updated.last_updated_at = now
    return updated, resets_applied


def remaining_free_sessions(allowance: schemas.SessionAllowance) -> int:
    return max(0, allowance.annual_free_session_cap - allowance.free_sessions_used)


def apply_session_usage(
    allowance: schemas.SessionAllowance,
    session_cost: float,
    now: datetime,
) -> Tuple[schemas.SessionAllowance, bool]:
    """Count one completed session. Returns the new allowance and whether it was free."""
    updated = allowance.model_copy()
    was_free = updated.free_sessions_used < updated.annual_free_session_cap
    if was_free:
        updated.free_sessions_used += 1
    else:
        updated.pending_paid_sessions += 1
        cost = _number(session_cost)
        if cost > 0:
            updated.pending_charge_amount = round(updated.pending_charge_amount + cost, 2)
    updated.last_updated_at = _utc(now)
    return updated, was_free


def _lock_patient(db: Session, patient_id: str) -> Optional[models.Patient]:
    return db.query(models.Patient).filter(
        models.Patient.id == patient_id
    ).with_for_update().first()


def record_session_usage(
    db: Session,
    patient_id: str,
    appointment_id: str,
    session_cost: float,
    now: datetime,
) -> Optional[schemas.SessionUsageResult]:
    """
    Read-refresh-increment-write on the patient's allowance. Runs inside the
    caller's transaction with the patient row locked; the caller commits.
    Returns None for patients outside the capped-benefit category.
    """
    patient = _lock_patient(db, patient_id)
    if patient is None:
        raise AllowanceError(f"Patient {patient_id} not found while recording session usage.")
    if not is_capped_benefit(patient):
        return None

    now = _utc(now)
    allowance = normalize_session_allowance(patient.session_allowance, now)
    allowance, _ = refresh_session_allowance_if_needed(allowance, now)
    allowance, was_free = apply_session_usage(allowance, session_cost, now)

    patient.session_allowance = allowance.to_document()
    patient.last_session_completed_at = now
    patient.last_completed_appointment_id = appointment_id
    db.add(patient)

    logger.info(
        "session_usage_recorded",
        patient_id=patient_id,
        appointment_id=appointment_id,
        was_free=was_free,
        free_sessions_used=allowance.free_sessions_used,
        pending_paid_sessions=allowance.pending_paid_sessions,
    )
    return schemas.SessionUsageResult(
        was_free=was_free,
        allowance=allowance,
        remaining_free_sessions=remaining_free_sessions(allowance),
    )


def get_session_allowance(db: Session, patient: models.Patient, now: datetime) -> schemas.SessionAllowanceView:
    """Refreshed allowance of one patient; persists the refresh when a reset was due or it was missing."""
    allowance = normalize_session_allowance(patient.session_allowance, now)
    allowance, resets_applied = refresh_session_allowance_if_needed(allowance, now)
    if resets_applied or not patient.session_allowance:
        patient.session_allowance = allowance.to_document()
        db.add(patient)
        db.commit()
        db.refresh(patient)
    return schemas.SessionAllowanceView(
        patient_id=patient.id,
        allowance=allowance,
        remaining_free_sessions=remaining_free_sessions(allowance),
        resets_applied=resets_applied,
    )


def refresh_all_allowances(db: Session, now: datetime, batch_size: int = 400) -> schemas.AllowanceRefreshReport:
    """Refresh every capped-benefit patient, initialising missing allowances."""
    patients = db.query(models.Patient).filter(
        models.Patient.patient_type == get_settings().capped_benefit_patient_type
    ).all()

    updated_count = 0
    total_resets = 0
    initialized = 0
    pending = 0

    for patient in patients:
        raw = patient.session_allowance
        allowance = normalize_session_allowance(raw, now) if raw else create_initial_session_allowance(now)
        allowance, resets = refresh_session_allowance_if_needed(allowance, now)

        needs_update = resets > 0
        if not raw:
            initialized += 1
            needs_update = True

        if needs_update:
            patient.session_allowance = allowance.to_document()
            db.add(patient)
            updated_count += 1
            total_resets += resets
            pending += 1

        if pending >= batch_size:
            db.commit()
            pending = 0

    if pending:
        db.commit()

    logger.info(
        "session_allowances_refreshed",
        patients=len(patients),
        records_updated=updated_count,
        resets_applied=total_resets,
        initialized=initialized,
    )
    return schemas.AllowanceRefreshReport(
        patients=len(patients),
        records_updated=updated_count,
        resets_applied=total_resets,
        initialized=initialized,
    )
