# clinic_scheduler/schemas.py
from datetime import datetime
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator, computed_field
from enum import Enum

from .services.intervals import parse_date, parse_time, resolve_duration


# --- Enum Classes ---
class AppointmentStatus(str, Enum):
    pending = "pending"
    ongoing = "ongoing"
    completed = "completed"
    cancelled = "cancelled"


class RecurrenceFrequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"


class RecurringDateStatus(str, Enum):
    created = "created"
    conflict = "conflict"
    unavailable = "unavailable"
    failed = "failed"


class TransferConflictReason(str, Enum):
    no_availability = "no_availability"
    slot_unavailable = "slot_unavailable"
    already_booked = "already_booked"


# --- Shared validators ---
def _check_date(v):
    if v is None:
        return v
    parse_date(v)
    return v


def _check_time(v):
    if v is None:
        return v
    parse_time(v)
    return v


def _check_duration(v):
    if v is None:
        return v
    return resolve_duration(v)


def _check_weekday_keys(v):
    from .services.availability_service import WEEKDAY_NAMES
    unknown = [key for key in v if key not in WEEKDAY_NAMES]
    if unknown:
        raise ValueError(f"Unknown weekday name(s): {', '.join(unknown)}")
    return v


# --- Base Schemas ---
class BaseSchema(BaseModel):
    class Config:
        from_attributes = True


# --- Availability Schemas ---
class TimeSlot(BaseSchema):
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def validate_times(cls, v):
        return _check_time(v)


class DaySchedule(BaseSchema):
    enabled: bool = False
    slots: List[TimeSlot] = Field(default_factory=list)


class AvailabilityResponse(BaseSchema):
    clinician_id: str
    weekly: Dict[str, DaySchedule] = Field(default_factory=dict)
    by_date: Dict[str, DaySchedule] = Field(default_factory=dict)


class AvailabilityCheckRequest(BaseSchema):
    clinician_id: str = Field(..., min_length=1)
    date: str
    time: str
    duration: Optional[int] = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, v):
        return _check_date(v)

    @field_validator("time")
    @classmethod
    def validate_time(cls, v):
        return _check_time(v)

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v):
        return _check_duration(v)


class AvailabilityResult(BaseSchema):
    is_available: bool
    reason: Optional[str] = None


class LockedSlot(BaseSchema):
    slot: TimeSlot
    appointment_ids: List[str]


class LockedSlotsResponse(BaseSchema):
    clinician_id: str
    date: str
    locked_slots: List[LockedSlot]


# --- Appointment Schemas ---
class AppointmentRecord(BaseSchema):
    """Shape of an existing appointment as consumed by the conflict detector."""
    id: str
    clinician_id: str
    date: str
    time: str
    duration: Optional[int] = None
    status: AppointmentStatus = AppointmentStatus.pending
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    clinician_name: Optional[str] = None


class ConflictCandidate(BaseSchema):
    clinician_id: str = Field(..., min_length=1)
    date: str
    time: str
    duration: Optional[int] = None
    exclude_id: Optional[str] = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, v):
        return _check_date(v)

    @field_validator("time")
    @classmethod
    def validate_time(cls, v):
        return _check_time(v)

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v):
        return _check_duration(v)


class ConflictResult(BaseSchema):
    has_conflict: bool
    conflicting_appointments: List[AppointmentRecord] = Field(default_factory=list)


class AppointmentCreate(BaseSchema):
    id: Optional[str] = Field(None, max_length=64)
    patient_id: str = Field(..., min_length=1)
    patient_name: Optional[str] = Field(None, max_length=255)
    clinician_id: str = Field(..., min_length=1)
    date: str
    time: str
    duration: Optional[int] = None
    notes: Optional[str] = None
    billing: Optional[Dict[str, Any]] = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, v):
        return _check_date(v)

    @field_validator("time")
    @classmethod
    def validate_time(cls, v):
        return _check_time(v)

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v):
        return _check_duration(v)


class AppointmentResponse(BaseSchema):
    id: str
    patient_id: str
    patient_name: str
    clinician_id: str
    clinician_name: str
    date: str
    time: str
    duration: Optional[int] = None
    status: AppointmentStatus
    notes: Optional[str] = None
    billing: Optional[Dict[str, Any]] = None
    recurring_series_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RescheduleRequest(BaseSchema):
    date: str
    time: str
    duration: Optional[int] = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, v):
        return _check_date(v)

    @field_validator("time")
    @classmethod
    def validate_time(cls, v):
        return _check_time(v)

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v):
        return _check_duration(v)


class StatusUpdate(BaseSchema):
    status: AppointmentStatus
    session_cost: float = Field(0, ge=0)


class BookingRejection(BaseSchema):
    """Why a candidate was not persisted. Either part may be set."""
    message: str
    conflict: Optional[ConflictResult] = None
    availability: Optional[AvailabilityResult] = None


# --- Recurring Series Schemas ---
class RecurringPreviewRequest(BaseSchema):
    start_date: str
    frequency: RecurrenceFrequency
    count: int = Field(..., ge=1)

    @field_validator("start_date")
    @classmethod
    def validate_date(cls, v):
        return _check_date(v)


class RecurringPreviewResponse(BaseSchema):
    dates: List[str]


class RecurringSeriesCreate(BaseSchema):
    patient_id: str = Field(..., min_length=1)
    patient_name: Optional[str] = Field(None, max_length=255)
    clinician_id: str = Field(..., min_length=1)
    start_date: str
    time: str
    frequency: RecurrenceFrequency
    count: int = Field(..., ge=1)
    duration: Optional[int] = None
    notes: Optional[str] = None

    @field_validator("start_date")
    @classmethod
    def validate_date(cls, v):
        return _check_date(v)

    @field_validator("time")
    @classmethod
    def validate_time(cls, v):
        return _check_time(v)

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v):
        return _check_duration(v)


class RecurringDateResult(BaseSchema):
    date: str
    status: RecurringDateStatus
    appointment_id: Optional[str] = None
    reason: Optional[str] = None
    conflicting_appointments: List[AppointmentRecord] = Field(default_factory=list)


class RecurringSeriesResponse(BaseSchema):
    series_id: str
    requested: int
    created: int
    results: List[RecurringDateResult]

    @computed_field
    @property
    def is_partial(self) -> bool:
        return 0 < self.created < self.requested


# --- Transfer Schemas ---
class TransferRequest(BaseSchema):
    patient_id: str = Field(..., min_length=1)
    to_clinician_id: str = Field(..., min_length=1)


class TransferConflict(BaseSchema):
    appointment_id: str
    date: str
    time: str
    conflict_reason: TransferConflictReason


class TransferReport(BaseSchema):
    patient_id: str
    to_clinician_id: str
    appointments_checked: int
    conflicts: List[TransferConflict] = Field(default_factory=list)
    transferred_appointment_ids: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def can_transfer(self) -> bool:
        return not self.conflicts


# --- Clinician / Patient Schemas ---
class ClinicianCreate(BaseSchema):
    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=100)
    weekly_availability: Dict[str, DaySchedule] = Field(default_factory=dict)

    @field_validator("weekly_availability")
    @classmethod
    def validate_weekday_keys(cls, v):
        return _check_weekday_keys(v)


class ClinicianResponse(BaseSchema):
    id: str
    name: str


# --- Availability Template Schemas ---
class AvailabilityTemplateCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=100)
    schedule: Dict[str, DaySchedule] = Field(..., min_length=1)

    @field_validator("schedule")
    @classmethod
    def validate_weekday_keys(cls, v):
        return _check_weekday_keys(v)


class AvailabilityTemplateResponse(BaseSchema):
    id: int
    name: str
    schedule: Dict[str, DaySchedule]
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None


class PatientCreate(BaseSchema):
    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    patient_type: Optional[str] = Field(None, max_length=50)


class PatientResponse(BaseSchema):
    id: str
    name: str
    patient_type: Optional[str] = None


# --- Session Allowance Schemas ---
class SessionAllowance(BaseModel):
    """Annual free-session quota of a capped-benefit patient (stored camelCase)."""
    model_config = ConfigDict(populate_by_name=True)

    annual_free_session_cap: int = Field(..., alias="annualFreeSessionCap", ge=0)
    free_sessions_used: int = Field(0, alias="freeSessionsUsed", ge=0)
    pending_paid_sessions: int = Field(0, alias="pendingPaidSessions", ge=0)
    pending_charge_amount: float = Field(0, alias="pendingChargeAmount", ge=0)
    next_reset_at: datetime = Field(..., alias="nextResetAt")
    last_reset_at: Optional[datetime] = Field(None, alias="lastResetAt")
    last_updated_at: datetime = Field(..., alias="lastUpdatedAt")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class SessionUsageResult(BaseSchema):
    was_free: bool
    allowance: SessionAllowance
    remaining_free_sessions: int


class SessionAllowanceView(BaseSchema):
    patient_id: str
    allowance: SessionAllowance
    remaining_free_sessions: int
    resets_applied: int


class AllowanceRefreshReport(BaseSchema):
    patients: int
    records_updated: int
    resets_applied: int
    initialized: int


class AppointmentStatusResponse(BaseSchema):
    appointment: AppointmentResponse
    session_usage: Optional[SessionUsageResult] = None

    @model_validator(mode='after')
    def check_usage_only_on_completion(self):
        if self.session_usage is not None and self.appointment.status != AppointmentStatus.completed:
            raise ValueError("session usage is only reported for completed appointments")
        return self
