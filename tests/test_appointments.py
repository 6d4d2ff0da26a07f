from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException

from carebridge.database.connection import SessionLocal
from carebridge.api.appointments import guarded_update
from carebridge.database.models import Appointment


@pytest.fixture
def book(client, clinic, booking_day):
    def _book(patient=None, start_time="10:00", day=None):
        patient = patient or clinic.patient
        return client.post("/api/appointments", json={
            "doctor_id": clinic.doctor["id"],
            "date": (day or booking_day).isoformat(),
            "start_time": start_time,
            "reason": "Checkup",
        }, headers=patient["headers"])
    return _book


def set_status(client, user, appointment_id, status):
    return client.patch(f"/api/appointments/{appointment_id}/status", json={"status": status},
                        headers=user["headers"])


def test_book_appointment(book, clinic, booking_day):
    response = book()
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["status"] == "scheduled"
    assert body["queue_number"] == 1
    assert body["start_time"] == "10:00"
    assert body["end_time"] == "10:15"
    assert body["hospital_id"] == clinic.hospital["id"]
    assert body["estimated_wait_time"] == 0
    assert body["date"] == booking_day.isoformat()


def test_booking_outside_availability(book):
    response = book(start_time="07:00")
    assert response.status_code == 400
    assert response.json()["message"] == "Doctor is not available at the requested time"

    # 17:50 + 15 minutes runs past the 18:00 window end
    assert book(start_time="17:50").status_code == 400


def test_booking_in_the_past(book):
    yesterday = datetime.now().date() - timedelta(days=1)
    response = book(day=yesterday)
    assert response.status_code == 400
    assert response.json()["message"] == "Cannot book appointments in the past"


def test_only_patients_book(client, clinic, booking_day):
    response = client.post("/api/appointments", json={
        "doctor_id": clinic.doctor["id"], "date": booking_day.isoformat(), "start_time": "10:00",
    }, headers=clinic.staff["headers"])
    assert response.status_code == 403


def test_slot_can_only_be_booked_once(book, clinic):
    assert book().status_code == 201
    response = book(patient=clinic.other_patient)
    assert response.status_code == 409


def test_booking_must_start_on_the_slot_grid(book, clinic):
    assert book(start_time="10:00").status_code == 201
    response = book(patient=clinic.other_patient, start_time="10:05")
    assert response.status_code == 400
    assert response.json()["message"] == "Doctor is not available at the requested time"


def test_booking_cannot_overlap_after_consultation_time_changes(client, book, clinic):
    assert book(start_time="10:15").status_code == 201
    response = client.put("/api/doctors/profile", json={"avg_consultation_time": 20},
                          headers=clinic.doctor["headers"])
    assert response.status_code == 200

    # 10:20 is on the new 20 minute grid but runs into the 10:15-10:30 booking
    response = book(patient=clinic.other_patient, start_time="10:20")
    assert response.status_code == 409
    assert "overlaps" in response.json()["message"]

    assert book(patient=clinic.other_patient, start_time="10:40").status_code == 201


def test_cancelled_slot_is_released(client, book, clinic):
    appointment = book().json()
    response = client.delete(f"/api/appointments/{appointment['id']}", params={"reason": "Travel"},
                             headers=clinic.patient["headers"])
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["cancellation_reason"] == "Travel"
    assert response.json()["estimated_wait_time"] is None

    rebooked = book(patient=clinic.other_patient)
    assert rebooked.status_code == 201
    assert rebooked.json()["queue_number"] == 2


def test_wait_estimate_counts_appointments_ahead(client, book, clinic):
    first = book(start_time="10:00").json()
    second = book(patient=clinic.other_patient, start_time="10:15").json()
    assert second["queue_number"] == 2
    assert second["estimated_wait_time"] == 15

    set_status(client, clinic.doctor, first["id"], "in_progress")
    again = client.get(f"/api/appointments/{second['id']}", headers=clinic.other_patient["headers"]).json()
    assert again["estimated_wait_time"] == 0

    current = client.get(f"/api/appointments/{first['id']}", headers=clinic.patient["headers"]).json()
    assert current["estimated_wait_time"] == 0


def test_patient_cannot_cancel_within_24_hours(client, book, clinic):
    appointment = book().json()
    soon = datetime.now() + timedelta(hours=2)

    db = SessionLocal()
    try:
        row = db.get(Appointment, appointment["id"])
        row.date = soon.date()
        row.start_time = soon.time().replace(second=0, microsecond=0)
        db.commit()
    finally:
        db.close()

    response = client.delete(f"/api/appointments/{appointment['id']}", headers=clinic.patient["headers"])
    assert response.status_code == 400
    assert "24 hours" in response.json()["message"]

    # Staff of the hospital may still cancel
    response = client.delete(f"/api/appointments/{appointment['id']}", headers=clinic.staff["headers"])
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"


def test_doctors_cannot_cancel(client, book, clinic):
    appointment = book().json()
    response = client.delete(f"/api/appointments/{appointment['id']}", headers=clinic.doctor["headers"])
    assert response.status_code == 403


def test_lifecycle_and_completed_is_final(client, book, clinic):
    appointment = book().json()
    doctor = clinic.doctor

    queued = set_status(client, doctor, appointment["id"], "in_queue")
    assert queued.status_code == 200
    assert queued.json()["status"] == "in_queue"

    started = set_status(client, doctor, appointment["id"], "in_progress")
    assert started.json()["status"] == "in_progress"
    assert started.json()["actual_wait_time"] == 0

    completed = client.patch(f"/api/appointments/{appointment['id']}/status", json={
        "status": "completed", "notes": "Healthy", "prescription": "Rest",
    }, headers=doctor["headers"])
    assert completed.status_code == 200
    assert completed.json()["notes"] == "Healthy"

    for target in ("scheduled", "in_queue", "in_progress", "cancelled", "no_show"):
        response = set_status(client, doctor, appointment["id"], target)
        assert response.status_code == 400, target
        assert response.json()["message"] == f"Cannot change appointment status from completed to {target}"

    response = client.delete(f"/api/appointments/{appointment['id']}", headers=clinic.patient["headers"])
    assert response.status_code == 400


def test_status_update_permissions(client, book, clinic, register):
    appointment = book().json()
    other_doctor = register("other-doc@example.com", role="doctor")

    assert set_status(client, other_doctor, appointment["id"], "in_queue").status_code == 403
    assert set_status(client, clinic.patient, appointment["id"], "in_queue").status_code == 403
    assert set_status(client, clinic.staff, appointment["id"], "in_queue").status_code == 200


def test_list_is_scoped_and_ordered(client, book, clinic, booking_day):
    later = book(start_time="11:00").json()
    earlier = book(start_time="09:00").json()
    other = book(patient=clinic.other_patient, start_time="10:00").json()

    mine = client.get("/api/appointments", headers=clinic.patient["headers"]).json()
    assert [a["id"] for a in mine] == [earlier["id"], later["id"]]

    doctor_view = client.get("/api/appointments", headers=clinic.doctor["headers"]).json()
    assert [a["id"] for a in doctor_view] == [earlier["id"], other["id"], later["id"]]

    upcoming = client.get("/api/appointments", params={"upcoming": "true"}, headers=clinic.patient["headers"]).json()
    assert len(upcoming) == 2
    past = client.get("/api/appointments", params={"upcoming": "false"}, headers=clinic.patient["headers"]).json()
    assert past == []

    staff_view = client.get("/api/appointments", params={"status": "scheduled"},
                            headers=clinic.staff["headers"]).json()
    assert len(staff_view) == 3


def test_patients_only_see_their_own(client, book, clinic):
    appointment = book().json()
    response = client.get(f"/api/appointments/{appointment['id']}", headers=clinic.other_patient["headers"])
    assert response.status_code == 403


def test_doctor_day_queue(client, book, clinic, booking_day):
    first = book(start_time="10:00").json()
    second = book(patient=clinic.other_patient, start_time="09:00").json()
    set_status(client, clinic.doctor, first["id"], "no_show")

    response = client.get(f"/api/appointments/queue/{clinic.doctor['id']}",
                          params={"date": booking_day.isoformat()}, headers=clinic.doctor["headers"])
    assert response.status_code == 200
    assert [a["id"] for a in response.json()] == [second["id"]]
    assert response.json()[0]["estimated_wait_time"] == 0


def test_status_update_does_not_cancel(client, book, clinic):
    appointment = book().json()
    for user in (clinic.doctor, clinic.staff):
        response = set_status(client, user, appointment["id"], "cancelled")
        assert response.status_code == 400
        assert f"DELETE /api/appointments/{appointment['id']}" in response.json()["message"]

    current = client.get(f"/api/appointments/{appointment['id']}", headers=clinic.patient["headers"]).json()
    assert current["status"] == "scheduled"
    assert current["cancelled_at"] is None


def test_stale_transition_is_a_conflict(client, book, clinic):
    appointment = book().json()

    db = SessionLocal()
    try:
        stale = db.get(Appointment, appointment["id"])
        assert stale.status == "scheduled"
        assert set_status(client, clinic.doctor, appointment["id"], "in_queue").status_code == 200

        with pytest.raises(HTTPException) as exc_info:
            guarded_update(db, stale, ["scheduled"], {"status": "no_show"})
        assert exc_info.value.status_code == 409
    finally:
        db.close()

    current = client.get(f"/api/appointments/{appointment['id']}", headers=clinic.patient["headers"]).json()
    assert current["status"] == "in_queue"


def move_start(appointment_id, start):
    db = SessionLocal()
    try:
        row = db.get(Appointment, appointment_id)
        row.date = start.date()
        row.start_time = start.time().replace(second=0, microsecond=0)
        db.commit()
    finally:
        db.close()


def test_check_in_near_the_start_time(client, book, clinic):
    appointment = book().json()
    move_start(appointment["id"], datetime.now() + timedelta(minutes=10))

    response = client.post(f"/api/appointments/{appointment['id']}/check-in",
                           headers=clinic.other_patient["headers"])
    assert response.status_code == 403

    response = client.post(f"/api/appointments/{appointment['id']}/check-in", headers=clinic.patient["headers"])
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "in_queue"

    response = client.post(f"/api/appointments/{appointment['id']}/check-in", headers=clinic.staff["headers"])
    assert response.status_code == 400
    assert response.json()["message"] == "Cannot check in an appointment that is in_queue"


def test_check_in_is_closed_far_from_the_start_time(client, book, clinic):
    appointment = book().json()
    response = client.post(f"/api/appointments/{appointment['id']}/check-in", headers=clinic.patient["headers"])
    assert response.status_code == 400
    assert "30 minutes" in response.json()["message"]

    move_start(appointment["id"], datetime.now() - timedelta(minutes=45))
    response = client.post(f"/api/appointments/{appointment['id']}/check-in", headers=clinic.staff["headers"])
    assert response.status_code == 400


def test_doctors_do_not_check_in(client, book, clinic):
    appointment = book().json()
    move_start(appointment["id"], datetime.now() + timedelta(minutes=5))
    response = client.post(f"/api/appointments/{appointment['id']}/check-in", headers=clinic.doctor["headers"])
    assert response.status_code == 403
