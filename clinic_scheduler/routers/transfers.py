# clinic_scheduler/routers/transfers.py
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..config import get_settings
from ..database import get_db
from ..limiter import limiter
from ..services import booking_service

router = APIRouter(
    tags=["Transfers"],
    responses={404: {"description": "Not found"}},
)


@router.post("/transfers/check", response_model=schemas.TransferReport)
def check_transfer(transfer: schemas.TransferRequest, db: Session = Depends(get_db)):
    """List the patient's open appointments the target clinician could not take over."""
    try:
        return booking_service.check_transfer(db, transfer.patient_id, transfer.to_clinician_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/transfers", response_model=schemas.TransferReport)
@limiter.limit(get_settings().booking_rate_limit)
def apply_transfer(
    transfer: schemas.TransferRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Optional[str] = Header(None, alias="X-Actor"),
):
    """Move every open appointment to the target clinician, or none when any of them conflicts."""
    try:
        report = booking_service.transfer_appointments(
            db, transfer.patient_id, transfer.to_clinician_id, actor=actor
        )
    except crud.NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not report.can_transfer:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=report.model_dump(mode="json"))
    return report
