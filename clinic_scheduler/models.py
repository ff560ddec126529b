# clinic_scheduler/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text,
    Enum as SQLAlchemyEnum, JSON, Index, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


class AppointmentStatus(str, enum.Enum):
    pending = "pending"
    ongoing = "ongoing"
    completed = "completed"
    cancelled = "cancelled"


ACTIVE_STATUSES = (AppointmentStatus.pending, AppointmentStatus.ongoing, AppointmentStatus.completed)


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    BULK_ACTION = "BULK_ACTION"


class Clinician(Base):
    """A member of the clinical team who can be booked."""
    __tablename__ = "clinicians"

    id = Column(String(64), primary_key=True, index=True)
    name = Column(String(100), nullable=False)

    # Day schedules keyed by weekday name ("Monday") and by ISO date ("2024-01-15")
    weekly_availability = Column(JSON, nullable=True)
    date_availability = Column(JSON, nullable=True)

    # Bumped on every write; a commit against a stale version raises StaleDataError
    version_id = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    appointments = relationship("Appointment", back_populates="clinician")

    __mapper_args__ = {"version_id_col": version_id}


class Patient(Base):
    """Patient record; only the fields the scheduler needs."""
    __tablename__ = "patients"
    __table_args__ = (
        Index('idx_patients_type', 'patient_type'),
    )

    id = Column(String(64), primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    patient_type = Column(String(50), nullable=True)

    # Capped-benefit annual quota state, see services/allowance_service.py
    session_allowance = Column(JSON, nullable=True)
    last_session_completed_at = Column(DateTime(timezone=True), nullable=True)
    last_completed_appointment_id = Column(String(64), nullable=True)
    version_id = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    appointments = relationship("Appointment", back_populates="patient")

    __mapper_args__ = {"version_id_col": version_id}


class Appointment(Base):
    """One scheduled clinical encounter. Dates and times are naive local strings."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_clinician_date', 'clinician_id', 'date'),
        Index('idx_appointments_patient_status', 'patient_id', 'status'),
        Index('idx_appointments_series', 'recurring_series_id'),
        # At most one active appointment per clinician start time
        Index(
            'uq_appointments_active_clinician_start',
            'clinician_id', 'date', 'time',
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )

    id = Column(String(64), primary_key=True, index=True)
    patient_id = Column(String(64), ForeignKey("patients.id"), nullable=False)
    patient_name = Column(String(255), nullable=False)
    clinician_id = Column(String(64), ForeignKey("clinicians.id"), nullable=False)
    clinician_name = Column(String(100), nullable=False)

    date = Column(String(10), nullable=False)  # YYYY-MM-DD
    time = Column(String(5), nullable=False)   # HH:MM
    duration = Column(Integer, nullable=True)  # minutes, NULL means default

    status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'),
                    default=AppointmentStatus.pending, nullable=False, index=True)
    notes = Column(Text, nullable=True)
    billing = Column(JSON, nullable=True)
    recurring_series_id = Column(String(128), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    patient = relationship("Patient", back_populates="appointments")
    clinician = relationship("Clinician", back_populates="appointments")


class AvailabilityTemplate(Base):
    """Named weekly schedule that can be copied onto any clinician."""
    __tablename__ = "availability_templates"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, unique=True)
    schedule = Column(JSON, nullable=False)  # weekday name -> day schedule
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AuditLog(Base):
    """Append-only record of scheduling events."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_action_date', 'action', 'timestamp'),
        Index('idx_audit_resource', 'resource_type', 'resource_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    actor = Column(String(100), nullable=True)
    action = Column(SQLAlchemyEnum(AuditAction, name='audit_action'), nullable=False)
    category = Column(String(50), nullable=False, default="GENERAL", index=True)
    severity = Column(String(20), default="INFO")
    institution_id = Column(String(100), nullable=True)
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(String(64), nullable=True)
    details = Column(Text, nullable=True)
    new_values = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)
