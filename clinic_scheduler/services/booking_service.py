# clinic_scheduler/services/booking_service.py
"""
Booking flows: every write that places an appointment on a clinician's
calendar goes through here.

Each flow locks the clinician row, reads the clinician's appointments for the
date, runs the conflict and availability checks, and writes in the same
transaction. Writers also bump the clinician's row version, so on engines
that ignore row locks the later of two overlapping commits fails with
StaleDataError and is re-checked. The partial unique index on active
(clinician, date, time) rows is the last line for identical start times.
"""
from datetime import date, datetime
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..config import get_settings
from . import allowance_service, availability_service, conflict_service, recurring_service
from .intervals import format_date, parse_date

logger = structlog.get_logger(__name__)


class BookingError(Exception):
    pass


class InvalidTransitionError(BookingError):
    pass


class InvalidScheduleError(BookingError):
    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class SlotLockedError(BookingError):
    def __init__(self, violations: List[str]):
        super().__init__("; ".join(violations))
        self.violations = violations


class BookingResult:
    """Outcome of a booking attempt: either an appointment or a rejection."""

    def __init__(self, appointment: Optional[models.Appointment] = None,
                 rejection: Optional[schemas.BookingRejection] = None):
        self.appointment = appointment
        self.rejection = rejection

    @property
    def ok(self) -> bool:
        return self.appointment is not None


# ==================== CHECKS ====================

def evaluate_candidate(
    db: Session,
    clinician: models.Clinician,
    date_str: str,
    time_str: str,
    duration: Optional[int] = None,
    exclude_id: Optional[str] = None,
) -> Optional[schemas.BookingRejection]:
    """Run both checks for one candidate. Returns None when it may be booked."""
    default_duration = get_settings().default_appointment_duration
    existing = crud.get_clinician_appointments_on_date(db, clinician.id, date_str)

    conflict = conflict_service.check_appointment_conflict(
        existing,
        schemas.ConflictCandidate(
            clinician_id=clinician.id, date=date_str, time=time_str,
            duration=duration, exclude_id=exclude_id,
        ),
        default_duration=default_duration,
    )
    weekly, by_date = availability_service.schedule_maps(clinician)
    availability = availability_service.check_availability(
        weekly, by_date, date_str, time_str, duration or default_duration
    )

    if not conflict.has_conflict and availability.is_available:
        return None

    messages = []
    if conflict.has_conflict:
        messages.append(conflict_service.describe_conflict(conflict))
    if not availability.is_available:
        messages.append(availability.reason)
    return schemas.BookingRejection(
        message="; ".join(messages),
        conflict=conflict if conflict.has_conflict else None,
        availability=availability if not availability.is_available else None,
    )


def check_conflict(db: Session, candidate: schemas.ConflictCandidate) -> schemas.ConflictResult:
    existing = crud.get_clinician_appointments_on_date(db, candidate.clinician_id, candidate.date)
    return conflict_service.check_appointment_conflict(
        existing, candidate, default_duration=get_settings().default_appointment_duration
    )


def check_availability(db: Session, request: schemas.AvailabilityCheckRequest) -> schemas.AvailabilityResult:
    clinician = crud.get_clinician_or_404(db, request.clinician_id)
    weekly, by_date = availability_service.schedule_maps(clinician)
    return availability_service.check_availability(
        weekly, by_date, request.date, request.time,
        request.duration or get_settings().default_appointment_duration,
    )


def _rejection_from_integrity_error(db: Session, clinician_id: str, date_str: str, time_str: str,
                                    duration: Optional[int], exclude_id: Optional[str] = None) -> schemas.BookingRejection:
    # Another transaction won the race for this start time
    clinician = crud.get_clinician_or_404(db, clinician_id)
    rejection = evaluate_candidate(db, clinician, date_str, time_str, duration, exclude_id)
    if rejection is not None:
        return rejection
    return schemas.BookingRejection(
        message=f"Time slot {time_str} on {date_str} was just booked by another request",
        conflict=schemas.ConflictResult(has_conflict=True),
    )


def _contended_rejection(date_str: str, time_str: str) -> schemas.BookingRejection:
    return schemas.BookingRejection(
        message=f"The calendar kept changing while booking {time_str} on {date_str}; try again",
        conflict=schemas.ConflictResult(has_conflict=True),
    )


# ==================== BOOK / RESCHEDULE / CANCEL ====================

def book_appointment(db: Session, request: schemas.AppointmentCreate, actor: Optional[str] = None) -> BookingResult:
    if request.id and crud.get_appointment(db, request.id):
        raise crud.CRUDError(f"Appointment {request.id} already exists.")

    max_retries = get_settings().transaction_max_retries
    for attempt in range(1, max_retries + 1):
        try:
            clinician = crud.lock_clinician(db, request.clinician_id)
            patient = crud.get_patient_or_404(db, request.patient_id)

            rejection = evaluate_candidate(db, clinician, request.date, request.time, request.duration)
            if rejection is not None:
                db.rollback()
                logger.info("booking_rejected", clinician_id=request.clinician_id, date=request.date,
                            time=request.time, reason=rejection.message)
                return BookingResult(rejection=rejection)

            appointment = crud.build_appointment(
                clinician, patient, request.date, request.time,
                duration=request.duration, notes=request.notes, billing=request.billing,
                appointment_id=request.id, patient_name=request.patient_name,
            )
            db.add(appointment)
            crud.claim_clinician(clinician)
            db.commit()
            db.refresh(appointment)
            break
        except StaleDataError:
            # Another booking for this clinician committed first; re-run the checks
            db.rollback()
            logger.warning("booking_transaction_retry", clinician_id=request.clinician_id,
                           attempt=attempt, max_retries=max_retries)
        except IntegrityError as e:
            db.rollback()
            logger.warning("booking_integrity_error", clinician_id=request.clinician_id, error=str(e.orig))
            return BookingResult(rejection=_rejection_from_integrity_error(
                db, request.clinician_id, request.date, request.time, request.duration
            ))
        except crud.NotFoundError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("booking_failed", clinician_id=request.clinician_id, error=str(e))
            raise crud.CRUDError("A database error occurred while creating the appointment.")
    else:
        return BookingResult(rejection=_contended_rejection(request.date, request.time))

    logger.info("appointment_booked", appointment_id=appointment.id, clinician_id=appointment.clinician_id,
                date=appointment.date, time=appointment.time)
    compliance_logger.log_event(
        db, action="APPOINTMENT_CREATE", category="APPOINTMENT", actor=actor,
        resource_type="Appointment", resource_id=appointment.id,
        details=f"Appointment booked with {appointment.clinician_name} on {appointment.date} at {appointment.time}",
    )
    return BookingResult(appointment=appointment)


def reschedule_appointment(
    db: Session, appointment_id: str, request: schemas.RescheduleRequest, actor: Optional[str] = None
) -> BookingResult:
    appointment = crud.get_appointment(db, appointment_id)
    if appointment is None:
        raise crud.NotFoundError(f"Appointment {appointment_id} not found")
    if appointment.status in (models.AppointmentStatus.cancelled, models.AppointmentStatus.completed):
        raise InvalidTransitionError(f"Cannot reschedule a {appointment.status.value} appointment")

    duration = request.duration if request.duration is not None else appointment.duration
    clinician_id = appointment.clinician_id
    old_slot = (appointment.date, appointment.time)
    max_retries = get_settings().transaction_max_retries
    for attempt in range(1, max_retries + 1):
        try:
            clinician = crud.lock_clinician(db, clinician_id)
            appointment = crud.lock_appointment(db, appointment_id)

            rejection = evaluate_candidate(db, clinician, request.date, request.time, duration, exclude_id=appointment.id)
            if rejection is not None:
                db.rollback()
                return BookingResult(rejection=rejection)

            appointment.date = request.date
            appointment.time = request.time
            appointment.duration = duration
            db.add(appointment)
            crud.claim_clinician(clinician)
            db.commit()
            db.refresh(appointment)
            break
        except StaleDataError:
            db.rollback()
            logger.warning("reschedule_transaction_retry", appointment_id=appointment_id,
                           attempt=attempt, max_retries=max_retries)
        except IntegrityError:
            db.rollback()
            return BookingResult(rejection=_rejection_from_integrity_error(
                db, clinician_id, request.date, request.time, duration, exclude_id=appointment_id
            ))
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("reschedule_failed", appointment_id=appointment_id, error=str(e))
            raise crud.CRUDError("A database error occurred while rescheduling the appointment.")
    else:
        return BookingResult(rejection=_contended_rejection(request.date, request.time))

    compliance_logger.log_event(
        db, action="APPOINTMENT_RESCHEDULE", category="APPOINTMENT", actor=actor,
        resource_type="Appointment", resource_id=appointment.id,
        details=f"Rescheduled from {old_slot[0]} {old_slot[1]} to {appointment.date} {appointment.time}",
        new_values={"date": appointment.date, "time": appointment.time, "duration": appointment.duration},
    )
    return BookingResult(appointment=appointment)


def cancel_appointment(db: Session, appointment_id: str, actor: Optional[str] = None) -> models.Appointment:
    appointment = crud.lock_appointment(db, appointment_id)
    if appointment.status == models.AppointmentStatus.cancelled:
        db.rollback()
        return appointment
    if appointment.status == models.AppointmentStatus.completed:
        db.rollback()
        raise InvalidTransitionError("Cannot cancel a completed appointment")

    appointment.status = models.AppointmentStatus.cancelled
    db.commit()
    db.refresh(appointment)
    compliance_logger.log_event(
        db, action="APPOINTMENT_CANCEL", category="APPOINTMENT", actor=actor,
        resource_type="Appointment", resource_id=appointment.id,
        details=f"Cancelled appointment on {appointment.date} at {appointment.time}",
    )
    return appointment


def complete_appointment(
    db: Session,
    appointment_id: str,
    now: datetime,
    session_cost: float = 0,
    actor: Optional[str] = None,
) -> Tuple[models.Appointment, Optional[schemas.SessionUsageResult]]:
    """
    Mark an appointment completed and count it against the patient's allowance
    in one transaction. If the transaction cannot be committed the status
    stays where it was.
    """
    max_retries = get_settings().transaction_max_retries
    last_error = None

    for attempt in range(1, max_retries + 1):
        try:
            appointment = crud.lock_appointment(db, appointment_id)
            if appointment.status == models.AppointmentStatus.completed:
                db.rollback()
                return appointment, None
            if appointment.status == models.AppointmentStatus.cancelled:
                raise InvalidTransitionError("Cannot complete a cancelled appointment")

            usage = allowance_service.record_session_usage(
                db, appointment.patient_id, appointment.id, session_cost, now
            )
            appointment.status = models.AppointmentStatus.completed
            db.add(appointment)
            db.commit()
            db.refresh(appointment)
        except (OperationalError, StaleDataError) as e:
            # Locked database, or the patient's allowance was written by another completion
            db.rollback()
            last_error = e
            logger.warning("completion_transaction_retry", appointment_id=appointment_id,
                           attempt=attempt, max_retries=max_retries, error=str(e))
            continue
        except (BookingError, crud.CRUDError, allowance_service.AllowanceError):
            db.rollback()
            raise

        compliance_logger.log_event(
            db, action="APPOINTMENT_COMPLETE", category="APPOINTMENT", actor=actor,
            resource_type="Appointment", resource_id=appointment.id,
            details=f"Completed appointment on {appointment.date} at {appointment.time}",
            new_values={"was_free": usage.was_free} if usage else None,
        )
        return appointment, usage

    logger.error("completion_transaction_failed", appointment_id=appointment_id, error=str(last_error))
    raise allowance_service.AllowanceTransactionError(
        f"Could not record completion of appointment {appointment_id} after {max_retries} attempts"
    )


def update_status(
    db: Session,
    appointment_id: str,
    update: schemas.StatusUpdate,
    now: datetime,
    actor: Optional[str] = None,
) -> Tuple[models.Appointment, Optional[schemas.SessionUsageResult]]:
    if update.status == schemas.AppointmentStatus.cancelled:
        return cancel_appointment(db, appointment_id, actor), None
    if update.status == schemas.AppointmentStatus.completed:
        return complete_appointment(db, appointment_id, now, update.session_cost, actor)

    appointment = crud.lock_appointment(db, appointment_id)
    if appointment.status in (models.AppointmentStatus.cancelled, models.AppointmentStatus.completed):
        db.rollback()
        raise InvalidTransitionError(
            f"Cannot move a {appointment.status.value} appointment back to {update.status.value}"
        )
    appointment.status = models.AppointmentStatus(update.status.value)
    db.commit()
    db.refresh(appointment)
    return appointment, None


# ==================== RECURRING SERIES ====================

def _book_series_date(
    db: Session,
    request: schemas.RecurringSeriesCreate,
    patient: models.Patient,
    series_id: str,
    date_str: str,
    max_retries: int,
) -> schemas.RecurringDateResult:
    for attempt in range(1, max_retries + 1):
        try:
            clinician = crud.lock_clinician(db, request.clinician_id)
            rejection = evaluate_candidate(db, clinician, date_str, request.time, request.duration)
            if rejection is not None:
                db.rollback()
                status = (schemas.RecurringDateStatus.conflict if rejection.conflict
                          else schemas.RecurringDateStatus.unavailable)
                return schemas.RecurringDateResult(
                    date=date_str, status=status, reason=rejection.message,
                    conflicting_appointments=rejection.conflict.conflicting_appointments if rejection.conflict else [],
                )

            appointment = crud.build_appointment(
                clinician, patient, date_str, request.time,
                duration=request.duration, notes=request.notes,
                patient_name=request.patient_name, recurring_series_id=series_id,
            )
            db.add(appointment)
            crud.claim_clinician(clinician)
            db.commit()
            return schemas.RecurringDateResult(
                date=date_str, status=schemas.RecurringDateStatus.created, appointment_id=appointment.id,
            )
        except StaleDataError:
            db.rollback()
            logger.warning("recurring_date_retry", series_id=series_id, date=date_str,
                           attempt=attempt, max_retries=max_retries)
        except IntegrityError:
            db.rollback()
            return schemas.RecurringDateResult(
                date=date_str, status=schemas.RecurringDateStatus.conflict,
                reason=f"Time slot {request.time} on {date_str} was just booked by another request",
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("recurring_date_failed", series_id=series_id, date=date_str, error=str(e))
            return schemas.RecurringDateResult(
                date=date_str, status=schemas.RecurringDateStatus.failed, reason=str(e),
            )

    return schemas.RecurringDateResult(
        date=date_str, status=schemas.RecurringDateStatus.conflict,
        reason=_contended_rejection(date_str, request.time).message,
    )


def create_recurring_series(
    db: Session, request: schemas.RecurringSeriesCreate, actor: Optional[str] = None
) -> schemas.RecurringSeriesResponse:
    """
    Book each generated date in its own transaction. Dates that fail are
    reported, dates already created stay created.
    """
    settings = get_settings()
    dates = recurring_service.generate_recurring_dates(
        request.start_date, request.frequency, request.count, max_count=settings.max_recurring_count
    )
    patient = crud.get_patient_or_404(db, request.patient_id)
    crud.get_clinician_or_404(db, request.clinician_id)
    series_id = recurring_service.new_series_id(patient.id, request.start_date)

    results = [
        _book_series_date(db, request, patient, series_id, date_str, settings.transaction_max_retries)
        for date_str in dates
    ]

    created = sum(1 for result in results if result.status == schemas.RecurringDateStatus.created)
    response = schemas.RecurringSeriesResponse(
        series_id=series_id, requested=len(dates), created=created, results=results,
    )
    logger.info("recurring_series_created", series_id=series_id, requested=len(dates), created=created)
    if created:
        compliance_logger.log_event(
            db, action="RECURRING_CREATE", category="APPOINTMENT", actor=actor,
            resource_type="RecurringSeries", resource_id=series_id[:64],
            details=f"Created {created} of {len(dates)} {request.frequency.value} appointments",
        )
    return response


# ==================== TRANSFER ====================

def check_transfer(db: Session, patient_id: str, to_clinician_id: str) -> schemas.TransferReport:
    """Check every open appointment of the patient against the target clinician's calendar."""
    target = crud.get_clinician_or_404(db, to_clinician_id)
    crud.get_patient_or_404(db, patient_id)
    default_duration = get_settings().default_appointment_duration
    weekly, by_date = availability_service.schedule_maps(target)

    appointments = [apt for apt in crud.get_patient_open_appointments(db, patient_id)
                    if apt.clinician_id != target.id]
    conflicts = []
    # Appointments accepted so far in this transfer also occupy the target's calendar
    planned = []

    for apt in appointments:
        schedule = availability_service.resolve_day_schedule(weekly, by_date, apt.date)
        reason = None
        if schedule is None or not schedule.enabled:
            reason = schemas.TransferConflictReason.no_availability
        elif not availability_service.check_availability(
                weekly, by_date, apt.date, apt.time, apt.duration or default_duration).is_available:
            reason = schemas.TransferConflictReason.slot_unavailable
        else:
            existing = crud.to_records(crud.get_clinician_appointments_on_date(db, target.id, apt.date))
            candidate = schemas.ConflictCandidate(
                clinician_id=target.id, date=apt.date, time=apt.time, duration=apt.duration, exclude_id=apt.id,
            )
            result = conflict_service.check_appointment_conflict(existing + planned, candidate, default_duration)
            if result.has_conflict:
                reason = schemas.TransferConflictReason.already_booked

        if reason is not None:
            conflicts.append(schemas.TransferConflict(
                appointment_id=apt.id, date=apt.date, time=apt.time, conflict_reason=reason,
            ))
        else:
            record = schemas.AppointmentRecord.model_validate(apt)
            planned.append(record.model_copy(update={"clinician_id": target.id}))

    return schemas.TransferReport(
        patient_id=patient_id,
        to_clinician_id=target.id,
        appointments_checked=len(appointments),
        conflicts=conflicts,
    )


def _contended_transfer_report(db: Session, patient_id: str, to_clinician_id: str) -> schemas.TransferReport:
    """
    Report for a transfer that lost every commit race. When a fresh check
    finds nothing wrong the appointments still could not be moved, so each of
    them is reported as already booked.
    """
    report = check_transfer(db, patient_id, to_clinician_id)
    if report.conflicts:
        return report
    contended = [
        schemas.TransferConflict(
            appointment_id=apt.id, date=apt.date, time=apt.time,
            conflict_reason=schemas.TransferConflictReason.already_booked,
        )
        for apt in crud.get_patient_open_appointments(db, patient_id)
        if apt.clinician_id != to_clinician_id
    ]
    return report.model_copy(update={"conflicts": contended})


def transfer_appointments(
    db: Session, patient_id: str, to_clinician_id: str, actor: Optional[str] = None
) -> schemas.TransferReport:
    """Move all open appointments of a patient to another clinician, or none of them."""
    max_retries = get_settings().transaction_max_retries
    for attempt in range(1, max_retries + 1):
        try:
            target = crud.lock_clinician(db, to_clinician_id)
            report = check_transfer(db, patient_id, to_clinician_id)
            if not report.can_transfer:
                db.rollback()
                logger.info("transfer_rejected", patient_id=patient_id, to_clinician_id=to_clinician_id,
                            conflicts=len(report.conflicts))
                return report

            moved = []
            for apt in crud.get_patient_open_appointments(db, patient_id):
                if apt.clinician_id == target.id:
                    continue
                apt.clinician_id = target.id
                apt.clinician_name = target.name
                db.add(apt)
                moved.append(apt.id)
            crud.claim_clinician(target)
            db.commit()
            break
        except (IntegrityError, StaleDataError) as e:
            # A booking on the target calendar committed in between; check again
            db.rollback()
            logger.warning("transfer_transaction_retry", patient_id=patient_id, to_clinician_id=to_clinician_id,
                           attempt=attempt, max_retries=max_retries, error=str(e))
        except crud.NotFoundError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("transfer_failed", patient_id=patient_id, error=str(e))
            raise crud.CRUDError("A database error occurred while transferring appointments.")
    else:
        report = _contended_transfer_report(db, patient_id, to_clinician_id)
        logger.info("transfer_rejected", patient_id=patient_id, to_clinician_id=to_clinician_id,
                    conflicts=len(report.conflicts))
        return report

    report.transferred_appointment_ids = moved
    compliance_logger.log_event(
        db, action="APPOINTMENT_TRANSFER", category="APPOINTMENT", actor=actor,
        resource_type="Patient", resource_id=patient_id,
        details=f"Transferred {len(moved)} appointment(s) to {target.name}",
        new_values={"clinician_id": target.id, "appointment_ids": moved},
    )
    return report


# ==================== AVAILABILITY EDITS ====================

def _is_date_key(key: str) -> bool:
    try:
        parse_date(key)
        return True
    except ValueError:
        return False


def _schedule_edit_violations(
    db: Session,
    clinician: models.Clinician,
    key: str,
    schedule: schemas.DaySchedule,
    by_date_key: bool,
    today: date,
) -> List[str]:
    weekly, by_date = availability_service.schedule_maps(clinician)
    if by_date_key:
        current = availability_service.resolve_day_schedule(weekly, by_date, key)
        booked = crud.get_clinician_appointments_on_date(db, clinician.id, key)
        return availability_service.check_schedule_edit(current, schedule, key, booked)

    violations = []
    upcoming = crud.get_clinician_active_appointments_from(db, clinician.id, format_date(today))
    for date_str in sorted({apt.date for apt in upcoming}):
        # Dates with their own schedule are unaffected by the weekday default
        if date_str in by_date or availability_service.weekday_name(date_str) != key:
            continue
        on_date = [apt for apt in upcoming if apt.date == date_str]
        violations.extend(
            availability_service.check_schedule_edit(weekly.get(key), schedule, date_str, on_date)
        )
    return violations


def update_availability(
    db: Session,
    clinician_id: str,
    key: str,
    schedule: schemas.DaySchedule,
    today: date,
    actor: Optional[str] = None,
) -> models.Clinician:
    """
    Store the day schedule for a weekday name or an ISO date. Slots that hold
    active appointments cannot be removed, shrunk or disabled.
    """
    by_date_key = _is_date_key(key)
    if not by_date_key and key not in availability_service.WEEKDAY_NAMES:
        raise InvalidScheduleError([f"'{key}' is neither a weekday name nor a YYYY-MM-DD date"])

    errors = availability_service.validate_day_schedule(schedule)
    if errors:
        raise InvalidScheduleError(errors)

    try:
        clinician = crud.lock_clinician(db, clinician_id)
        violations = _schedule_edit_violations(db, clinician, key, schedule, by_date_key, today)
        if violations:
            db.rollback()
            raise SlotLockedError(violations)

        crud.set_day_schedule(db, clinician, key, schedule, by_date=by_date_key)
        db.commit()
        db.refresh(clinician)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("availability_update_failed", clinician_id=clinician_id, key=key, error=str(e))
        raise crud.CRUDError("A database error occurred while saving availability.")

    compliance_logger.log_event(
        db, action="SCHEDULE_UPDATE", category="SCHEDULE", actor=actor,
        resource_type="Clinician", resource_id=clinician.id,
        details=f"Updated availability for {key}",
        new_values=schedule.model_dump(),
    )
    return clinician


def apply_availability_template(
    db: Session,
    clinician_id: str,
    template_id: int,
    today: date,
    actor: Optional[str] = None,
) -> models.Clinician:
    """
    Copy every weekday of a template onto the clinician's weekly schedule.
    Weekdays the template leaves out keep their current schedule. Nothing is
    written when any weekday would drop a slot that holds bookings.
    """
    template = crud.get_availability_template_or_404(db, template_id)
    schedules = {day: schemas.DaySchedule.model_validate(raw) for day, raw in template.schedule.items()}
    errors = [f"{day}: {error}" for day, schedule in schedules.items()
              for error in availability_service.validate_day_schedule(schedule)]
    if errors:
        raise InvalidScheduleError(errors)

    try:
        clinician = crud.lock_clinician(db, clinician_id)
        violations = []
        for day, schedule in schedules.items():
            violations.extend(_schedule_edit_violations(db, clinician, day, schedule, False, today))
        if violations:
            db.rollback()
            raise SlotLockedError(violations)

        for day, schedule in schedules.items():
            crud.set_day_schedule(db, clinician, day, schedule, by_date=False)
        db.commit()
        db.refresh(clinician)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("template_apply_failed", clinician_id=clinician_id, template_id=template_id, error=str(e))
        raise crud.CRUDError("A database error occurred while applying the availability template.")

    logger.info("availability_template_applied", clinician_id=clinician.id, template_id=template.id,
                weekdays=sorted(schedules))
    compliance_logger.log_event(
        db, action="SCHEDULE_UPDATE", category="SCHEDULE", actor=actor,
        resource_type="Clinician", resource_id=clinician.id,
        details=f"Applied availability template '{template.name}'",
        new_values={"template_id": template.id, "weekdays": sorted(schedules)},
    )
    return clinician


def get_locked_slots(db: Session, clinician_id: str, date_str: str) -> schemas.LockedSlotsResponse:
    clinician = crud.get_clinician_or_404(db, clinician_id)
    weekly, by_date = availability_service.schedule_maps(clinician)
    schedule = availability_service.resolve_day_schedule(weekly, by_date, date_str)
    booked = crud.get_clinician_appointments_on_date(db, clinician.id, date_str)
    return schemas.LockedSlotsResponse(
        clinician_id=clinician.id,
        date=date_str,
        locked_slots=availability_service.find_locked_slots(schedule, date_str, booked),
    )
