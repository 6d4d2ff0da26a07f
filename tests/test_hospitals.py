import pytest

from carebridge.geo import calculate_distance, bounding_box


def create_hospital(client, staff, name, latitude, longitude):
    response = client.post("/api/hospitals", json={
        "name": name,
        "address": f"{name} Road",
        "latitude": latitude,
        "longitude": longitude,
    }, headers=staff["headers"])
    assert response.status_code == 201, response.text
    return response.json()


def test_haversine_distance():
    # One degree of latitude is about 111.2 km
    assert calculate_distance(0, 0, 1, 0) == pytest.approx(111.19, abs=0.01)
    assert calculate_distance(12.97, 77.59, 12.97, 77.59) == 0


def test_bounding_box_contains_radius():
    min_lat, max_lat, min_lng, max_lng = bounding_box(12.97, 77.59, 10)
    assert min_lat < 12.97 < max_lat
    assert min_lng < 77.59 < max_lng
    assert calculate_distance(12.97, 77.59, max_lat, 77.59) == pytest.approx(10, rel=1e-3)


def test_staff_creating_hospital_becomes_member(client, register):
    staff = register("s@example.com", role="staff")
    hospital = create_hospital(client, staff, "North Clinic", 10.0, 10.0)
    me = client.get("/api/auth/me", headers=staff["headers"]).json()
    assert me["hospital_id"] == hospital["id"]


def test_patients_cannot_create_hospitals(client, register):
    patient = register("p@example.com")
    response = client.post("/api/hospitals", json={
        "name": "Nope", "address": "Nowhere", "latitude": 0, "longitude": 0,
    }, headers=patient["headers"])
    assert response.status_code == 403


def test_near_uses_meters(client, register):
    staff = register("s@example.com", role="staff")
    origin = (12.9716, 77.5946)
    create_hospital(client, staff, "Far Hospital", origin[0] + 0.135, origin[1])      # ~15 km
    create_hospital(client, staff, "Close Hospital", origin[0] + 0.0045, origin[1])   # ~0.5 km
    create_hospital(client, staff, "Origin Hospital", origin[0], origin[1])

    response = client.get("/api/hospitals/near", params={
        "latitude": origin[0], "longitude": origin[1], "maxDistance": 10000,
    }, headers=staff["headers"])
    assert response.status_code == 200
    results = response.json()
    assert [h["name"] for h in results] == ["Origin Hospital", "Close Hospital"]
    assert results[0]["distance_km"] == 0
    assert results[1]["distance_km"] < 1

    wide = client.get("/api/hospitals/near", params={
        "latitude": origin[0], "longitude": origin[1], "maxDistance": 20000,
    }, headers=staff["headers"]).json()
    assert [h["name"] for h in wide][-1] == "Far Hospital"


def test_update_hospital_requires_membership(client, clinic, register):
    outsider = register("other-staff@example.com", role="staff")
    hospital_id = clinic.hospital["id"]

    response = client.put(f"/api/hospitals/{hospital_id}", json={"phone": "555-0199"},
                          headers=outsider["headers"])
    assert response.status_code == 403

    response = client.put(f"/api/hospitals/{hospital_id}", json={"phone": "555-0199"},
                          headers=clinic.staff["headers"])
    assert response.status_code == 200
    assert response.json()["phone"] == "555-0199"


def test_assign_and_remove_doctor(client, clinic, register):
    hospital_id = clinic.hospital["id"]
    free_doctor = register("free@example.com", role="doctor")

    response = client.post(f"/api/hospitals/{hospital_id}/doctors/{free_doctor['id']}",
                           headers=clinic.staff["headers"])
    assert response.status_code == 200
    assert response.json()["hospital_name"] == "City General"

    doctors = client.get(f"/api/hospitals/{hospital_id}/doctors", headers=clinic.patient["headers"]).json()
    assert {d["id"] for d in doctors} == {clinic.doctor["id"], free_doctor["id"]}

    response = client.delete(f"/api/hospitals/{hospital_id}/doctors/{free_doctor['id']}",
                             headers=clinic.staff["headers"])
    assert response.status_code == 200

    doctors = client.get(f"/api/hospitals/{hospital_id}/doctors", headers=clinic.patient["headers"]).json()
    assert [d["id"] for d in doctors] == [clinic.doctor["id"]]


def test_get_unknown_hospital(client, clinic):
    response = client.get("/api/hospitals/999", headers=clinic.patient["headers"])
    assert response.status_code == 404
    assert response.json() == {"message": "Hospital not found"}
