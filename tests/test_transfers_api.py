# tests/test_transfers_api.py
import pytest
from sqlalchemy.exc import IntegrityError

from conftest import MONDAY, WEEKDAYS_NINE_TO_FIVE

TUESDAY = "2024-03-05"
WEDNESDAY = "2024-03-06"


@pytest.fixture(autouse=True)
def calendar(make_clinician, make_patient):
    make_clinician("dr-smith", "Dr. Smith")
    make_patient("p-1", "Jane Doe")
    make_patient("p-2", "John Roe")


def _transfer(client, to_clinician_id, path="/api/v1/transfers"):
    return client.post(path, json={"patient_id": "p-1", "to_clinician_id": to_clinician_id})


def test_clean_transfer_moves_every_open_appointment(client, book, make_clinician):
    make_clinician("dr-jones", "Dr. Jones")
    first = book("10:00").json()
    second = book("11:00", date=TUESDAY).json()
    done = book("12:00", date=WEDNESDAY).json()
    client.patch(f"/api/v1/appointments/{done['id']}/status", json={"status": "completed"})

    check = _transfer(client, "dr-jones", "/api/v1/transfers/check").json()
    assert check["can_transfer"] is True
    assert check["appointments_checked"] == 2
    assert check["conflicts"] == []

    response = _transfer(client, "dr-jones")
    assert response.status_code == 200
    assert sorted(response.json()["transferred_appointment_ids"]) == sorted([first["id"], second["id"]])

    moved = client.get("/api/v1/appointments", params={"patient_id": "p-1"}).json()
    by_id = {apt["id"]: apt for apt in moved}
    assert by_id[first["id"]]["clinician_id"] == "dr-jones"
    assert by_id[first["id"]]["clinician_name"] == "Dr. Jones"
    # Completed sessions stay with the clinician who held them
    assert by_id[done["id"]]["clinician_id"] == "dr-smith"


def test_transfer_reports_each_conflict_reason(client, book, make_clinician):
    weekly = dict(WEEKDAYS_NINE_TO_FIVE)
    weekly["Tuesday"] = {"enabled": False, "slots": []}
    weekly["Wednesday"] = {"enabled": True, "slots": [{"start": "13:00", "end": "17:00"}]}
    make_clinician("dr-jones", "Dr. Jones", weekly=weekly)

    booked = book("10:00").json()
    no_day = book("10:00", date=TUESDAY).json()
    out_of_hours = book("10:00", date=WEDNESDAY).json()
    # Dr. Jones already sees someone at the Monday time
    assert book("10:15", clinician_id="dr-jones", patient_id="p-2").status_code == 201

    report = _transfer(client, "dr-jones", "/api/v1/transfers/check").json()
    assert report["can_transfer"] is False
    reasons = {conflict["appointment_id"]: conflict["conflict_reason"] for conflict in report["conflicts"]}
    assert reasons == {
        booked["id"]: "already_booked",
        no_day["id"]: "no_availability",
        out_of_hours["id"]: "slot_unavailable",
    }


def test_transfer_with_any_conflict_moves_nothing(client, book, make_clinician):
    weekly = dict(WEEKDAYS_NINE_TO_FIVE)
    weekly["Tuesday"] = {"enabled": False, "slots": []}
    make_clinician("dr-jones", "Dr. Jones", weekly=weekly)
    book("10:00")
    book("10:00", date=TUESDAY)

    response = _transfer(client, "dr-jones")
    assert response.status_code == 409
    assert response.json()["detail"]["transferred_appointment_ids"] == []

    remaining = client.get("/api/v1/appointments", params={"patient_id": "p-1"}).json()
    assert {apt["clinician_id"] for apt in remaining} == {"dr-smith"}


def test_transfer_uses_target_date_overrides(client, book, make_clinician):
    make_clinician("dr-jones", "Dr. Jones", by_date={MONDAY: {"enabled": False, "slots": []}})
    book("10:00")
    report = _transfer(client, "dr-jones", "/api/v1/transfers/check").json()
    assert report["conflicts"][0]["conflict_reason"] == "no_availability"


def test_transfer_unknown_target(client):
    assert _transfer(client, "dr-nobody", "/api/v1/transfers/check").status_code == 404
    assert _transfer(client, "dr-nobody").status_code == 404


def _failing_commits(db_session, monkeypatch, failures):
    """Make the next ``failures`` commits raise as if a booking on the target had won the race."""
    commit = db_session.commit
    remaining = [failures]

    def commit_or_lose_race():
        if remaining[0] > 0:
            remaining[0] -= 1
            raise IntegrityError("UPDATE appointments", {}, Exception("UNIQUE constraint failed"))
        commit()

    monkeypatch.setattr(db_session, "commit", commit_or_lose_race)


def test_transfer_retries_after_losing_a_commit_race(client, book, make_clinician, db_session, monkeypatch):
    make_clinician("dr-jones", "Dr. Jones")
    apt = book("10:00").json()
    _failing_commits(db_session, monkeypatch, failures=1)

    response = _transfer(client, "dr-jones")
    assert response.status_code == 200
    assert response.json()["transferred_appointment_ids"] == [apt["id"]]


def test_transfer_that_never_commits_is_a_conflict(client, book, make_clinician, db_session, monkeypatch):
    make_clinician("dr-jones", "Dr. Jones")
    first = book("10:00").json()
    second = book("11:00", date=TUESDAY).json()
    _failing_commits(db_session, monkeypatch, failures=10)

    response = _transfer(client, "dr-jones")
    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["can_transfer"] is False
    assert detail["transferred_appointment_ids"] == []
    assert {conflict["appointment_id"]: conflict["conflict_reason"] for conflict in detail["conflicts"]} == {
        first["id"]: "already_booked",
        second["id"]: "already_booked",
    }

    remaining = client.get("/api/v1/appointments", params={"patient_id": "p-1"}).json()
    assert {apt["clinician_id"] for apt in remaining} == {"dr-smith"}


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["database"] == "ok"
