# clinic_scheduler/routers/appointments.py
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..config import get_settings
from ..database import get_db
from ..limiter import limiter
from ..services import allowance_service, booking_service, recurring_service
from ..services.intervals import parse_date

router = APIRouter(
    tags=["Appointments"],
    responses={404: {"description": "Not found"}},
)

settings = get_settings()


def _rejected(rejection: schemas.BookingRejection) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=rejection.model_dump(mode="json"))


@router.post("/appointments/check-conflict", response_model=schemas.ConflictResult)
def check_conflict(payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    """Check a candidate against the clinician's active appointments without booking it."""
    try:
        candidate = schemas.ConflictCandidate.model_validate(payload)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=[{"loc": err["loc"], "msg": err["msg"]} for err in e.errors()],
        )
    return booking_service.check_conflict(db, candidate)


@router.post("/appointments/check-availability", response_model=schemas.AvailabilityResult)
def check_availability(request: schemas.AvailabilityCheckRequest, db: Session = Depends(get_db)):
    try:
        return booking_service.check_availability(db, request)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/appointments", response_model=schemas.AppointmentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.booking_rate_limit)
def create_appointment(
    appointment: schemas.AppointmentCreate,
    request: Request,
    db: Session = Depends(get_db),
    actor: Optional[str] = Header(None, alias="X-Actor"),
):
    try:
        result = booking_service.book_appointment(db, appointment, actor=actor)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not result.ok:
        raise _rejected(result.rejection)
    return result.appointment


@router.get("/appointments", response_model=List[schemas.AppointmentResponse])
def list_appointments(
    clinician_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    start_date: Optional[str] = Query(None, description="YYYY-MM-DD, inclusive"),
    end_date: Optional[str] = Query(None, description="YYYY-MM-DD, inclusive"),
    status_filter: Optional[schemas.AppointmentStatus] = Query(None, alias="status"),
    recurring_series_id: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    for value in (start_date, end_date):
        if value is not None:
            try:
                parse_date(value)
            except ValueError as e:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return crud.list_appointments(
        db,
        clinician_id=clinician_id,
        patient_id=patient_id,
        start_date=start_date,
        end_date=end_date,
        status=status_filter,
        recurring_series_id=recurring_series_id,
        skip=skip,
        limit=limit,
    )


@router.post("/appointments/recurring/preview", response_model=schemas.RecurringPreviewResponse)
def preview_recurring_dates(request: schemas.RecurringPreviewRequest):
    try:
        dates = recurring_service.generate_recurring_dates(
            request.start_date, request.frequency, request.count, max_count=settings.max_recurring_count
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return schemas.RecurringPreviewResponse(dates=dates)


@router.post("/appointments/recurring", response_model=schemas.RecurringSeriesResponse)
@limiter.limit(settings.booking_rate_limit)
def create_recurring_series(
    series: schemas.RecurringSeriesCreate,
    request: Request,
    db: Session = Depends(get_db),
    actor: Optional[str] = Header(None, alias="X-Actor"),
):
    """
    Book every date of a recurring series. Each date succeeds or fails on its
    own; the response lists the outcome per date.
    """
    try:
        return booking_service.create_recurring_series(db, series, actor=actor)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except crud.NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.patch("/appointments/{appointment_id}/reschedule", response_model=schemas.AppointmentResponse)
@limiter.limit(settings.booking_rate_limit)
def reschedule_appointment(
    appointment_id: str,
    reschedule: schemas.RescheduleRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Optional[str] = Header(None, alias="X-Actor"),
):
    try:
        result = booking_service.reschedule_appointment(db, appointment_id, reschedule, actor=actor)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (booking_service.InvalidTransitionError, crud.CRUDError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not result.ok:
        raise _rejected(result.rejection)
    return result.appointment


@router.patch("/appointments/{appointment_id}/status", response_model=schemas.AppointmentStatusResponse)
def update_appointment_status(
    appointment_id: str,
    update: schemas.StatusUpdate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Header(None, alias="X-Actor"),
):
    """Move an appointment through its lifecycle. Completing it counts the session against the patient's allowance."""
    try:
        appointment, usage = booking_service.update_status(
            db, appointment_id, update, now=datetime.now(timezone.utc), actor=actor
        )
    except crud.NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except allowance_service.AllowanceTransactionError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except (booking_service.InvalidTransitionError, allowance_service.AllowanceError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return schemas.AppointmentStatusResponse(
        appointment=schemas.AppointmentResponse.model_validate(appointment),
        session_usage=usage,
    )
