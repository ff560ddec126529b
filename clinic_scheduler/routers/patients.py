# clinic_scheduler/routers/patients.py
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..compliance_logger import compliance_logger
from ..database import get_db
from ..services import allowance_service

router = APIRouter(
    tags=["Patients"],
    responses={404: {"description": "Not found"}},
)


@router.post("/patients", response_model=schemas.PatientResponse, status_code=status.HTTP_201_CREATED)
def create_new_patient(
    patient: schemas.PatientCreate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Header(None, alias="X-Actor"),
):
    """
    Create a new patient record. Capped-benefit patients start with a fresh
    annual allowance.
    """
    try:
        new_patient = crud.create_patient(db, patient)
    except crud.CRUDError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if allowance_service.is_capped_benefit(new_patient):
        allowance_service.get_session_allowance(db, new_patient, datetime.now(timezone.utc))

    compliance_logger.log_event(
        db, action="CREATE", category="PATIENT", actor=actor,
        resource_type="Patient", resource_id=new_patient.id,
        details=f"Created new patient: {new_patient.name}",
        new_values=patient.model_dump(),
    )
    return new_patient


@router.get("/patients/{patient_id}/session-allowance", response_model=schemas.SessionAllowanceView)
def read_session_allowance(patient_id: str, db: Session = Depends(get_db)):
    try:
        patient = crud.get_patient_or_404(db, patient_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if not allowance_service.is_capped_benefit(patient):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Patient {patient_id} has no annual session allowance.",
        )
    return allowance_service.get_session_allowance(db, patient, datetime.now(timezone.utc))


@router.post("/patients/session-allowance/refresh", response_model=schemas.AllowanceRefreshReport)
def refresh_session_allowances(
    db: Session = Depends(get_db),
    actor: Optional[str] = Header(None, alias="X-Actor"),
):
    """Apply due yearly resets to every capped-benefit patient and initialise missing allowances."""
    report = allowance_service.refresh_all_allowances(db, datetime.now(timezone.utc))
    compliance_logger.log_event(
        db, action="BULK_ACTION", category="PATIENT", actor=actor,
        resource_type="SessionAllowance",
        details=f"Refreshed {report.records_updated} of {report.patients} session allowances",
        new_values=report.model_dump(),
    )
    return report
