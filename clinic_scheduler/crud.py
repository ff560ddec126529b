# clinic_scheduler/crud.py
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
import logging
import uuid

from . import models, schemas

logger = logging.getLogger(__name__)


class CRUDError(Exception):
    pass


class NotFoundError(CRUDError):
    pass


# ==================== CLINICIAN CRUD OPERATIONS ====================

def get_clinician(db: Session, clinician_id: str) -> Optional[models.Clinician]:
    return db.query(models.Clinician).filter(models.Clinician.id == clinician_id).first()


def get_clinician_or_404(db: Session, clinician_id: str) -> models.Clinician:
    clinician = get_clinician(db, clinician_id)
    if clinician is None:
        raise NotFoundError(f"Clinician {clinician_id} not found")
    return clinician


def lock_clinician(db: Session, clinician_id: str) -> models.Clinician:
    """Lock the clinician row for the rest of the transaction; serialises bookings per clinician."""
    clinician = db.query(models.Clinician).filter(
        models.Clinician.id == clinician_id
    ).with_for_update().first()
    if clinician is None:
        raise NotFoundError(f"Clinician {clinician_id} not found")
    return clinician


def claim_clinician(clinician: models.Clinician) -> models.Clinician:
    """
    Mark the clinician row as written by this transaction. The version bump
    makes a second transaction that read the same calendar fail on commit,
    also on engines that ignore FOR UPDATE.
    """
    clinician.updated_at = datetime.now(timezone.utc)
    return clinician


def create_clinician(db: Session, clinician: schemas.ClinicianCreate) -> models.Clinician:
    db_clinician = models.Clinician(
        id=clinician.id,
        name=clinician.name,
        weekly_availability={day: schedule.model_dump() for day, schedule in clinician.weekly_availability.items()},
        date_availability={},
    )
    try:
        db.add(db_clinician)
        db.commit()
        db.refresh(db_clinician)
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Database integrity error on clinician creation: {e}")
        raise CRUDError(f"Clinician {clinician.id} already exists.")
    return db_clinician


def set_day_schedule(db: Session, clinician: models.Clinician, key: str, schedule: schemas.DaySchedule, by_date: bool) -> models.Clinician:
    """Store one day schedule. JSON columns are replaced, not mutated, so the change is tracked."""
    if by_date:
        updated = dict(clinician.date_availability or {})
        updated[key] = schedule.model_dump()
        clinician.date_availability = updated
    else:
        updated = dict(clinician.weekly_availability or {})
        updated[key] = schedule.model_dump()
        clinician.weekly_availability = updated
    db.add(clinician)
    return clinician


# ==================== PATIENT CRUD OPERATIONS ====================

def get_patient(db: Session, patient_id: str) -> Optional[models.Patient]:
    return db.query(models.Patient).filter(models.Patient.id == patient_id).first()


def get_patient_or_404(db: Session, patient_id: str) -> models.Patient:
    patient = get_patient(db, patient_id)
    if patient is None:
        raise NotFoundError(f"Patient {patient_id} not found")
    return patient


def create_patient(db: Session, patient: schemas.PatientCreate) -> models.Patient:
    db_patient = models.Patient(**patient.model_dump())
    try:
        db.add(db_patient)
        db.commit()
        db.refresh(db_patient)
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Database integrity error on patient creation: {e}")
        raise CRUDError(f"Patient {patient.id} already exists.")
    return db_patient


# ==================== AVAILABILITY TEMPLATE CRUD OPERATIONS ====================

def get_availability_template(db: Session, template_id: int) -> Optional[models.AvailabilityTemplate]:
    return db.query(models.AvailabilityTemplate).filter(models.AvailabilityTemplate.id == template_id).first()


def get_availability_template_or_404(db: Session, template_id: int) -> models.AvailabilityTemplate:
    template = get_availability_template(db, template_id)
    if template is None:
        raise NotFoundError(f"Availability template {template_id} not found")
    return template


def list_availability_templates(db: Session) -> List[models.AvailabilityTemplate]:
    return db.query(models.AvailabilityTemplate).order_by(models.AvailabilityTemplate.name).all()


def create_availability_template(
    db: Session, template: schemas.AvailabilityTemplateCreate, created_by: Optional[str] = None
) -> models.AvailabilityTemplate:
    db_template = models.AvailabilityTemplate(
        name=template.name,
        schedule={day: schedule.model_dump() for day, schedule in template.schedule.items()},
        created_by=created_by or "System",
    )
    try:
        db.add(db_template)
        db.commit()
        db.refresh(db_template)
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Database integrity error on template creation: {e}")
        raise CRUDError(f"An availability template named '{template.name}' already exists.")
    return db_template


def delete_availability_template(db: Session, template_id: int) -> models.AvailabilityTemplate:
    db_template = get_availability_template_or_404(db, template_id)
    db.delete(db_template)
    db.commit()
    return db_template


# ==================== APPOINTMENT CRUD OPERATIONS ====================

def get_appointment(db: Session, appointment_id: str) -> Optional[models.Appointment]:
    return db.query(models.Appointment).filter(models.Appointment.id == appointment_id).first()


def lock_appointment(db: Session, appointment_id: str) -> models.Appointment:
    appointment = db.query(models.Appointment).filter(
        models.Appointment.id == appointment_id
    ).with_for_update().first()
    if appointment is None:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    return appointment


def get_clinician_appointments_on_date(db: Session, clinician_id: str, date: str) -> List[models.Appointment]:
    """Active appointments of a clinician on one date, by start time."""
    return db.query(models.Appointment).filter(
        models.Appointment.clinician_id == clinician_id,
        models.Appointment.date == date,
        models.Appointment.status.in_(models.ACTIVE_STATUSES),
    ).order_by(models.Appointment.time).all()


def get_clinician_active_appointments_from(db: Session, clinician_id: str, from_date: str) -> List[models.Appointment]:
    """Active appointments of a clinician on or after ``from_date`` (ISO dates sort lexically)."""
    return db.query(models.Appointment).filter(
        models.Appointment.clinician_id == clinician_id,
        models.Appointment.date >= from_date,
        models.Appointment.status.in_(models.ACTIVE_STATUSES),
    ).order_by(models.Appointment.date, models.Appointment.time).all()


def get_patient_open_appointments(db: Session, patient_id: str) -> List[models.Appointment]:
    return db.query(models.Appointment).filter(
        models.Appointment.patient_id == patient_id,
        models.Appointment.status.in_([models.AppointmentStatus.pending, models.AppointmentStatus.ongoing]),
    ).order_by(models.Appointment.date, models.Appointment.time).all()


def list_appointments(
    db: Session,
    clinician_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    status: Optional[schemas.AppointmentStatus] = None,
    recurring_series_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.Appointment]:
    query = db.query(models.Appointment)
    if clinician_id:
        query = query.filter(models.Appointment.clinician_id == clinician_id)
    if patient_id:
        query = query.filter(models.Appointment.patient_id == patient_id)
    if start_date:
        query = query.filter(models.Appointment.date >= start_date)
    if end_date:
        query = query.filter(models.Appointment.date <= end_date)
    if status:
        query = query.filter(models.Appointment.status == models.AppointmentStatus(status.value))
    if recurring_series_id:
        query = query.filter(models.Appointment.recurring_series_id == recurring_series_id)
    return query.order_by(models.Appointment.date, models.Appointment.time).offset(skip).limit(limit).all()


def build_appointment(
    clinician: models.Clinician,
    patient: models.Patient,
    date: str,
    time: str,
    duration: Optional[int] = None,
    notes: Optional[str] = None,
    billing: Optional[Dict[str, Any]] = None,
    appointment_id: Optional[str] = None,
    patient_name: Optional[str] = None,
    recurring_series_id: Optional[str] = None,
) -> models.Appointment:
    """New pending appointment; not added to the session."""
    return models.Appointment(
        id=appointment_id or uuid.uuid4().hex,
        patient_id=patient.id,
        patient_name=patient_name or patient.name,
        clinician_id=clinician.id,
        clinician_name=clinician.name,
        date=date,
        time=time,
        duration=duration,
        status=models.AppointmentStatus.pending,
        notes=notes,
        billing=billing,
        recurring_series_id=recurring_series_id,
    )


def to_records(appointments: List[models.Appointment]) -> List[schemas.AppointmentRecord]:
    return [schemas.AppointmentRecord.model_validate(apt) for apt in appointments]


def ping(db: Session) -> bool:
    from sqlalchemy import text
    try:
        db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return False
