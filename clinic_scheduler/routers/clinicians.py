# clinic_scheduler/routers/clinicians.py
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..compliance_logger import compliance_logger
from ..database import get_db
from ..services import availability_service, booking_service
from ..services.intervals import parse_date

router = APIRouter(
    tags=["Clinicians"],
    responses={404: {"description": "Not found"}},
)


@router.post("/clinicians", response_model=schemas.ClinicianResponse, status_code=status.HTTP_201_CREATED)
def create_clinician(
    clinician: schemas.ClinicianCreate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Header(None, alias="X-Actor"),
):
    for day, schedule in clinician.weekly_availability.items():
        errors = availability_service.validate_day_schedule(schedule)
        if errors:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail={day: errors})
    try:
        new_clinician = crud.create_clinician(db, clinician)
    except crud.CRUDError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    compliance_logger.log_event(
        db, action="CREATE", category="CLINICIAN", actor=actor,
        resource_type="Clinician", resource_id=new_clinician.id,
        details=f"Created clinician: {new_clinician.name}",
    )
    return new_clinician


@router.get("/clinicians/{clinician_id}/availability", response_model=schemas.AvailabilityResponse)
def read_availability(clinician_id: str, db: Session = Depends(get_db)):
    try:
        clinician = crud.get_clinician_or_404(db, clinician_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    weekly, by_date = availability_service.schedule_maps(clinician)
    return schemas.AvailabilityResponse(clinician_id=clinician.id, weekly=weekly, by_date=by_date)


@router.put("/clinicians/{clinician_id}/availability/{key}", response_model=schemas.AvailabilityResponse)
def update_availability(
    clinician_id: str,
    key: str,
    schedule: schemas.DaySchedule,
    db: Session = Depends(get_db),
    actor: Optional[str] = Header(None, alias="X-Actor"),
):
    """
    Replace the schedule of a weekday ("Monday") or of a single date
    ("2024-03-05"). Slots holding active appointments cannot be removed,
    shrunk or disabled; such edits are refused with 423.
    """
    try:
        clinician = booking_service.update_availability(
            db, clinician_id, key, schedule, today=datetime.now(timezone.utc).date(), actor=actor,
        )
    except crud.NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except booking_service.InvalidScheduleError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.errors)
    except booking_service.SlotLockedError as e:
        raise HTTPException(status_code=status.HTTP_423_LOCKED, detail=e.violations)
    except crud.CRUDError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    weekly, by_date = availability_service.schedule_maps(clinician)
    return schemas.AvailabilityResponse(clinician_id=clinician.id, weekly=weekly, by_date=by_date)


@router.get("/clinicians/{clinician_id}/availability/{date}/locked-slots", response_model=schemas.LockedSlotsResponse)
def read_locked_slots(clinician_id: str, date: str, db: Session = Depends(get_db)):
    try:
        parse_date(date)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    try:
        return booking_service.get_locked_slots(db, clinician_id, date)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
