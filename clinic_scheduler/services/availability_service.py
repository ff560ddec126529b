# clinic_scheduler/services/availability_service.py
"""
Availability checks against a clinician's day schedules.

A day schedule is ``{"enabled": bool, "slots": [{"start": "HH:MM", "end": "HH:MM"}]}``
stored either under a weekday name or under an ISO date. Date entries win.

A slot whose end is not after its start wraps past midnight: its end is
taken as ``end + 24h`` for containment and locking. The slot still belongs
to the date it is stored under.
"""
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

import structlog

from .. import schemas
from .conflict_service import as_record
from .intervals import (
    DEFAULT_DURATION_MINUTES, MINUTES_PER_DAY, minutes_since_midnight, parse_date, resolve_duration
)

logger = structlog.get_logger(__name__)

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

ScheduleLike = Union[schemas.DaySchedule, dict]
ScheduleMap = Mapping[str, ScheduleLike]


def _as_schedule(raw: Optional[ScheduleLike]) -> Optional[schemas.DaySchedule]:
    if raw is None or isinstance(raw, schemas.DaySchedule):
        return raw
    return schemas.DaySchedule.model_validate(raw)


def _as_slot(raw) -> schemas.TimeSlot:
    if isinstance(raw, schemas.TimeSlot):
        return raw
    return schemas.TimeSlot.model_validate(raw)


def weekday_name(date_str: str) -> str:
    return WEEKDAY_NAMES[parse_date(date_str).weekday()]


def slot_bounds(slot: schemas.TimeSlot) -> Tuple[int, int]:
    """Slot as minutes since midnight, end adjusted for wrap-around."""
    start = minutes_since_midnight(slot.start)
    end = minutes_since_midnight(slot.end)
    if end <= start:
        end += MINUTES_PER_DAY
    return start, end


def resolve_day_schedule(
    weekly: Optional[ScheduleMap],
    by_date: Optional[ScheduleMap],
    date_str: str,
) -> Optional[schemas.DaySchedule]:
    """Date-specific schedule first, then the weekday default."""
    parse_date(date_str)
    if by_date and date_str in by_date:
        return _as_schedule(by_date[date_str])
    day = weekday_name(date_str)
    if weekly and day in weekly:
        return _as_schedule(weekly[day])
    return None


def slot_contains(slot: schemas.TimeSlot, start_minute: int, duration: int) -> bool:
    slot_start, slot_end = slot_bounds(slot)
    return start_minute >= slot_start and start_minute + duration <= slot_end


def check_availability(
    weekly: Optional[ScheduleMap],
    by_date: Optional[ScheduleMap],
    date_str: str,
    time_str: str,
    duration: Optional[int] = None,
) -> schemas.AvailabilityResult:
    """
    The candidate ``[time, time + duration)`` must fit wholly inside one slot
    of the resolved day schedule. Adjacent slots are not stitched together.
    """
    duration = resolve_duration(duration, DEFAULT_DURATION_MINUTES)
    day = weekday_name(date_str)
    schedule = resolve_day_schedule(weekly, by_date, date_str)

    if schedule is None or not schedule.enabled:
        return schemas.AvailabilityResult(
            is_available=False,
            reason=f"{day} {date_str} is not available",
        )

    start_minute = minutes_since_midnight(time_str)
    for slot in schedule.slots:
        if slot_contains(slot, start_minute, duration):
            return schemas.AvailabilityResult(is_available=True)

    return schemas.AvailabilityResult(
        is_available=False,
        reason=f"Time slot {time_str} is not within available hours on {day} {date_str}",
    )


# ==================== SLOT LOCKING ====================

def _active_on_date(appointments: Iterable, date_str: str) -> List[schemas.AppointmentRecord]:
    records = (as_record(apt) for apt in appointments)
    return [
        apt for apt in records
        if apt.date == date_str and apt.status != schemas.AppointmentStatus.cancelled
    ]


def appointments_in_slot(slot: ScheduleLike, date_str: str, appointments: Iterable) -> List[schemas.AppointmentRecord]:
    """Active appointments on ``date_str`` whose start time falls inside the slot."""
    slot = _as_slot(slot)
    slot_start, slot_end = slot_bounds(slot)
    return [
        apt for apt in _active_on_date(appointments, date_str)
        if slot_start <= minutes_since_midnight(apt.time) < slot_end
    ]


def slot_has_appointments(slot: ScheduleLike, date_str: str, appointments: Iterable) -> bool:
    return bool(appointments_in_slot(slot, date_str, appointments))


def find_locked_slots(
    schedule: Optional[ScheduleLike],
    date_str: str,
    appointments: Iterable,
) -> List[schemas.LockedSlot]:
    schedule = _as_schedule(schedule)
    if schedule is None:
        return []
    appointments = list(appointments)
    locked = []
    for slot in schedule.slots:
        inside = appointments_in_slot(slot, date_str, appointments)
        if inside:
            locked.append(schemas.LockedSlot(slot=slot, appointment_ids=[apt.id for apt in inside]))
    return locked


# ==================== SCHEDULE VALIDATION ====================

def validate_day_schedule(schedule: ScheduleLike) -> List[str]:
    """Return problems with a day schedule: zero-length or mutually overlapping slots."""
    schedule = _as_schedule(schedule)
    errors = []
    bounds = []
    for slot in schedule.slots:
        if slot.start == slot.end:
            errors.append(f"Slot {slot.start}-{slot.end} has no length")
            continue
        bounds.append((slot_bounds(slot), slot))

    bounds.sort(key=lambda item: item[0])
    for (first_bounds, first), (second_bounds, second) in zip(bounds, bounds[1:]):
        if second_bounds[0] < first_bounds[1]:
            errors.append(f"Slot {first.start}-{first.end} overlaps slot {second.start}-{second.end}")
    return errors


def check_schedule_edit(
    current: Optional[ScheduleLike],
    proposed: ScheduleLike,
    date_str: str,
    appointments: Iterable,
) -> List[str]:
    """
    Reject edits that would strand a booked appointment: a locked slot may not
    be removed, shrunk past any of its appointments, or have its day disabled.
    """
    proposed = _as_schedule(proposed)
    appointments = list(appointments)
    locked = find_locked_slots(current, date_str, appointments)
    if not locked:
        return []

    violations = []
    if not proposed.enabled:
        violations.append(
            f"Cannot disable {date_str}: {len(locked)} time slot(s) have appointments assigned"
        )
        return violations

    booked = {apt.id: apt for apt in _active_on_date(appointments, date_str)}
    for locked_slot in locked:
        if locked_slot.slot in proposed.slots:
            continue
        old_bounds = slot_bounds(locked_slot.slot)
        # A replacement must keep the old slot's range so existing bookings still fit
        still_covered = any(
            new_bounds[0] <= old_bounds[0] and new_bounds[1] >= old_bounds[1]
            for new_bounds in (slot_bounds(slot) for slot in proposed.slots)
        )
        if not still_covered:
            times = ", ".join(sorted(booked[apt_id].time for apt_id in locked_slot.appointment_ids))
            violations.append(
                f"Cannot modify slot {locked_slot.slot.start}-{locked_slot.slot.end}: "
                f"appointments at {times} must be transferred or cancelled first"
            )
    if violations:
        logger.warning("locked_slot_edit_rejected", date=date_str, violations=violations)
    return violations


def schedule_maps(clinician) -> Tuple[Dict[str, dict], Dict[str, dict]]:
    """Weekly and date-specific schedule maps of a clinician row."""
    return dict(clinician.weekly_availability or {}), dict(clinician.date_availability or {})
