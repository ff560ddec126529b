# clinic_scheduler/services/conflict_service.py
from typing import Iterable, List, Union

import structlog

from .. import schemas
from .intervals import DEFAULT_DURATION_MINUTES, Interval

logger = structlog.get_logger(__name__)

AppointmentLike = Union[schemas.AppointmentRecord, dict, object]


def as_record(appointment: AppointmentLike) -> schemas.AppointmentRecord:
    if isinstance(appointment, schemas.AppointmentRecord):
        return appointment
    if isinstance(appointment, dict):
        return schemas.AppointmentRecord.model_validate(appointment)
    # ORM rows
    return schemas.AppointmentRecord.model_validate(appointment, from_attributes=True)


def active_appointments_for_clinician(
    appointments: Iterable[AppointmentLike],
    clinician_id: str,
    exclude_id: str = None,
) -> List[schemas.AppointmentRecord]:
    """Non-cancelled appointments of one clinician, minus the one being updated."""
    records = (as_record(apt) for apt in appointments)
    return [
        apt for apt in records
        if apt.status != schemas.AppointmentStatus.cancelled
        and apt.clinician_id == clinician_id
        and (not exclude_id or apt.id != exclude_id)
    ]


def check_appointment_conflict(
    appointments: Iterable[AppointmentLike],
    candidate: schemas.ConflictCandidate,
    default_duration: int = DEFAULT_DURATION_MINUTES,
) -> schemas.ConflictResult:
    """
    Report every active appointment of the candidate's clinician whose
    interval overlaps the candidate. Conflicts are scoped per clinician:
    one patient seeing two clinicians back to back is allowed.
    """
    candidate_interval = Interval.from_strings(
        candidate.date, candidate.time, candidate.duration or default_duration
    )

    conflicting = []
    for appointment in active_appointments_for_clinician(appointments, candidate.clinician_id, candidate.exclude_id):
        existing_interval = Interval.from_strings(
            appointment.date, appointment.time, appointment.duration or default_duration
        )
        if candidate_interval.overlaps(existing_interval):
            conflicting.append(appointment)

    if conflicting:
        logger.info(
            "appointment_conflict_detected",
            clinician_id=candidate.clinician_id,
            date=candidate.date,
            time=candidate.time,
            conflicting_ids=[apt.id for apt in conflicting],
        )

    return schemas.ConflictResult(
        has_conflict=bool(conflicting),
        conflicting_appointments=conflicting,
    )


def describe_conflict(result: schemas.ConflictResult) -> str:
    """Human-readable message listing the clashing appointments."""
    if not result.has_conflict:
        return "No conflicts detected"
    parts = []
    for apt in result.conflicting_appointments:
        who = apt.patient_name or apt.patient_id or apt.id
        parts.append(f"{who} at {apt.time} on {apt.date}")
    return "Conflicts with existing appointment(s): " + "; ".join(parts)
