from datetime import date, datetime, time, timedelta
from types import SimpleNamespace

import pytest

from carebridge.api.doctors import find_window, free_slots, normalize_day


def profile(*windows, minutes=15):
    return SimpleNamespace(availability=list(windows), avg_consultation_time=minutes)


MONDAY = date(2030, 1, 7)


def test_normalize_day():
    assert normalize_day("mon") == "Monday"
    assert normalize_day("  SUNDAY ") == "Sunday"
    with pytest.raises(ValueError):
        normalize_day("someday")


def test_find_window_needs_the_whole_consultation():
    p = profile({"day": "Monday", "start_time": "09:00", "end_time": "10:00", "is_available": True}, minutes=30)
    assert find_window(p, MONDAY, time(9, 30)) is not None
    assert find_window(p, MONDAY, time(9, 45)) is None
    assert find_window(p, MONDAY, time(8, 59)) is None
    assert find_window(p, MONDAY + timedelta(days=1), time(9, 0)) is None


def test_unavailable_windows_are_ignored():
    p = profile({"day": "Monday", "start_time": "09:00", "end_time": "12:00", "is_available": False})
    assert find_window(p, MONDAY, time(9, 0)) is None


def test_free_slots_skip_taken_and_past():
    p = profile({"day": "Monday", "start_time": "09:00", "end_time": "10:00", "is_available": True})
    now = datetime.combine(MONDAY, time(9, 10))
    assert free_slots(p, MONDAY, [(time(9, 30), time(9, 45))], now=now) == ["09:15", "09:45"]


def test_find_window_rejects_times_off_the_slot_grid():
    p = profile({"day": "Monday", "start_time": "09:00", "end_time": "10:00", "is_available": True})
    assert find_window(p, MONDAY, time(9, 15)) is not None
    assert find_window(p, MONDAY, time(9, 5)) is None


def test_free_slots_skip_partially_overlapped_slots():
    p = profile({"day": "Monday", "start_time": "09:00", "end_time": "10:00", "is_available": True})
    held = [(time(9, 0), time(9, 20))]
    assert free_slots(p, MONDAY, held) == ["09:30", "09:45"]


def test_update_profile_and_qualifications(client, clinic):
    headers = clinic.doctor["headers"]
    response = client.put("/api/doctors/profile", json={
        "experience_years": 12,
        "avg_consultation_time": 20,
        "languages": ["English", "Kannada"],
    }, headers=headers)
    assert response.status_code == 200
    assert response.json()["avg_consultation_time"] == 20
    assert len(response.json()["availability"]) == 7

    response = client.post("/api/doctors/profile/qualifications", json={
        "degree": "MBBS", "institution": "AIIMS", "year": 2008,
    }, headers=headers)
    assert response.status_code == 201
    assert response.json()["qualifications"][0]["degree"] == "MBBS"


def test_invalid_availability_window(client, clinic):
    response = client.put("/api/doctors/profile/availability/monday", json={
        "start_time": "12:00", "end_time": "09:00",
    }, headers=clinic.doctor["headers"])
    assert response.status_code == 400

    response = client.put("/api/doctors/profile/availability/funday", json={
        "start_time": "09:00", "end_time": "12:00",
    }, headers=clinic.doctor["headers"])
    assert response.status_code == 400


def test_profile_routes_are_for_doctors(client, clinic):
    response = client.get("/api/doctors/profile", headers=clinic.patient["headers"])
    assert response.status_code == 403


def test_search_by_specialization(client, clinic, register):
    register("derm@example.com", role="doctor", specialization="Dermatology")
    headers = clinic.patient["headers"]

    results = client.get("/api/doctors/search", params={"specialization": "cardio"}, headers=headers).json()
    assert [d["id"] for d in results] == [clinic.doctor["id"]]

    results = client.get("/api/doctors/search", params={"date": MONDAY.isoformat()}, headers=headers).json()
    assert [d["id"] for d in results] == [clinic.doctor["id"]]


def test_near_falls_back_to_hospital_location(client, clinic):
    results = client.get("/api/doctors/near", params={
        "latitude": clinic.hospital["latitude"],
        "longitude": clinic.hospital["longitude"],
        "maxDistance": 500,
    }, headers=clinic.patient["headers"]).json()
    assert [d["id"] for d in results] == [clinic.doctor["id"]]
    assert results[0]["distance_km"] == 0

    results = client.get("/api/doctors/near", params={
        "latitude": clinic.hospital["latitude"] + 1,
        "longitude": clinic.hospital["longitude"],
    }, headers=clinic.patient["headers"]).json()
    assert results == []


def test_availability_lists_free_slots(client, clinic, booking_day):
    headers = clinic.patient["headers"]
    doctor_id = clinic.doctor["id"]

    before = client.get(f"/api/doctors/{doctor_id}/availability", params={"date": booking_day.isoformat()},
                        headers=headers).json()
    assert before["free_slots"][0] == "08:00"
    assert "10:00" in before["free_slots"]

    response = client.post("/api/appointments", json={
        "doctor_id": doctor_id, "date": booking_day.isoformat(), "start_time": "10:00",
    }, headers=headers)
    assert response.status_code == 201

    after = client.get(f"/api/doctors/{doctor_id}/availability", params={"date": booking_day.isoformat()},
                       headers=headers).json()
    assert "10:00" not in after["free_slots"]
    assert len(after["free_slots"]) == len(before["free_slots"]) - 1


def test_unknown_doctor(client, clinic):
    response = client.get("/api/doctors/999", headers=clinic.patient["headers"])
    assert response.status_code == 404


def test_near_ignores_a_practice_location_without_longitude(client, clinic):
    response = client.put("/api/doctors/profile", json={"latitude": clinic.hospital["latitude"] + 5},
                          headers=clinic.doctor["headers"])
    assert response.status_code == 200

    results = client.get("/api/doctors/near", params={
        "latitude": clinic.hospital["latitude"],
        "longitude": clinic.hospital["longitude"],
        "maxDistance": 500,
    }, headers=clinic.patient["headers"]).json()
    assert [d["id"] for d in results] == [clinic.doctor["id"]]
