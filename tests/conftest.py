# tests/conftest.py
import os

os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"

from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinic_scheduler import models
from clinic_scheduler.database import Base, get_db
from clinic_scheduler.main import app

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

WORKING_DAY = {"enabled": True, "slots": [{"start": "09:00", "end": "17:00"}]}
DAY_OFF = {"enabled": False, "slots": []}
WEEKDAYS_NINE_TO_FIVE = {
    "Monday": WORKING_DAY,
    "Tuesday": WORKING_DAY,
    "Wednesday": WORKING_DAY,
    "Thursday": WORKING_DAY,
    "Friday": WORKING_DAY,
    "Saturday": DAY_OFF,
    "Sunday": DAY_OFF,
}

# 2024-03-04 is a Monday
MONDAY = "2024-03-04"
SATURDAY = "2024-03-09"


def next_weekday(weekday: int, weeks_ahead: int = 1) -> str:
    """ISO date of a weekday (0 = Monday) in the future."""
    today = date.today()
    days = (weekday - today.weekday()) % 7 + 7 * weeks_ahead
    return (today + timedelta(days=days)).isoformat()


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_clinician(db_session):
    def _make(clinician_id="dr-smith", name="Dr. Smith", weekly=None, by_date=None):
        clinician = models.Clinician(
            id=clinician_id,
            name=name,
            weekly_availability=WEEKDAYS_NINE_TO_FIVE if weekly is None else weekly,
            date_availability=by_date or {},
        )
        db_session.add(clinician)
        db_session.commit()
        return clinician
    return _make


@pytest.fixture
def make_patient(db_session):
    def _make(patient_id="p-1", name="Jane Doe", patient_type=None, session_allowance=None):
        patient = models.Patient(
            id=patient_id,
            name=name,
            patient_type=patient_type,
            session_allowance=session_allowance,
        )
        db_session.add(patient)
        db_session.commit()
        return patient
    return _make


@pytest.fixture
def book(client):
    def _book(time, date=MONDAY, clinician_id="dr-smith", patient_id="p-1", headers=None, **extra):
        payload = {"patient_id": patient_id, "clinician_id": clinician_id, "date": date, "time": time}
        payload.update(extra)
        return client.post("/api/v1/appointments", json=payload, headers=headers)
    return _book
