# clinic_scheduler/routers/templates.py
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..compliance_logger import compliance_logger
from ..database import get_db
from ..services import availability_service, booking_service

router = APIRouter(
    tags=["Availability Templates"],
    responses={404: {"description": "Not found"}},
)

logger = structlog.get_logger(__name__)


@router.post("/availability-templates", response_model=schemas.AvailabilityTemplateResponse,
             status_code=status.HTTP_201_CREATED)
def create_availability_template(
    template: schemas.AvailabilityTemplateCreate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Header(None, alias="X-Actor"),
):
    """Save a named weekly schedule for reuse across clinicians."""
    for day, schedule in template.schedule.items():
        errors = availability_service.validate_day_schedule(schedule)
        if errors:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail={day: errors})
    try:
        db_template = crud.create_availability_template(db, template, created_by=actor)
    except crud.CRUDError as e:
        logger.warning("template_create_failed", name=template.name, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    compliance_logger.log_event(
        db, action="CREATE", category="SCHEDULE", actor=actor,
        resource_type="AvailabilityTemplate", resource_id=str(db_template.id),
        details=f"Created availability template: {db_template.name}",
    )
    return db_template


@router.get("/availability-templates", response_model=List[schemas.AvailabilityTemplateResponse])
def list_availability_templates(db: Session = Depends(get_db)):
    return crud.list_availability_templates(db)


@router.delete("/availability-templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_availability_template(
    template_id: int,
    db: Session = Depends(get_db),
    actor: Optional[str] = Header(None, alias="X-Actor"),
):
    try:
        db_template = crud.delete_availability_template(db, template_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    compliance_logger.log_event(
        db, action="DELETE", category="SCHEDULE", actor=actor,
        resource_type="AvailabilityTemplate", resource_id=str(template_id),
        details=f"Deleted availability template: {db_template.name}",
    )


@router.post(
    "/clinicians/{clinician_id}/availability/apply-template/{template_id}",
    response_model=schemas.AvailabilityResponse,
)
def apply_availability_template(
    clinician_id: str,
    template_id: int,
    db: Session = Depends(get_db),
    actor: Optional[str] = Header(None, alias="X-Actor"),
):
    """
    Replace the clinician's weekly schedule for every weekday the template
    defines. Refused with 423 when a weekday would lose a slot holding
    upcoming appointments; nothing is changed in that case.
    """
    try:
        clinician = booking_service.apply_availability_template(
            db, clinician_id, template_id, today=datetime.now(timezone.utc).date(), actor=actor,
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
