from conftest import close_consultation, create_consultation, start_consultation


def test_doctor_creates_draft_consultation(client, doctor, patient):
    consultation = create_consultation(client, doctor, patient)

    assert consultation["status"] == "draft"
    assert consultation["doctorUserId"] == doctor["id"]
    assert consultation["patientUserId"] == patient["id"]
    assert consultation["startedAt"] is None


def test_patient_cannot_create_consultation(client, patient, other_patient):
    response = client.post(
        "/consultations", json={"patientUserId": other_patient["id"]}, headers=patient["headers"]
    )
    assert response.status_code == 403


def test_create_consultation_requires_existing_patient(client, doctor, other_doctor):
    unknown = client.post(
        "/consultations", json={"patientUserId": "missing"}, headers=doctor["headers"]
    )
    not_patient = client.post(
        "/consultations", json={"patientUserId": other_doctor["id"]}, headers=doctor["headers"]
    )
    assert unknown.status_code == 404
    assert not_patient.status_code == 404


def test_start_and_close_lifecycle(client, fake_clock, doctor, patient):
    started = start_consultation(client, doctor, patient)
    assert started["status"] == "in_progress"
    assert started["startedAt"].startswith("2026-03-10T15:00:00")

    fake_clock.advance(minutes=30)
    closed = client.post(
        f"/consultations/{started['id']}/close",
        json={"summary": "Mild flu", "notes": "Rest and fluids"},
        headers=doctor["headers"],
    )

    assert closed.status_code == 200
    body = closed.json()
    assert body["status"] == "closed"
    assert body["closedAt"].startswith("2026-03-10T15:30:00")
    assert body["summary"] == "Mild flu"

    again = client.post(f"/consultations/{started['id']}/close", headers=doctor["headers"])
    assert again.status_code == 409
    restart = client.post(f"/consultations/{started['id']}/start", headers=doctor["headers"])
    assert restart.status_code == 409


def test_only_owning_doctor_can_start(client, doctor, other_doctor, patient):
    consultation = create_consultation(client, doctor, patient)

    response = client.post(
        f"/consultations/{consultation['id']}/start", headers=other_doctor["headers"]
    )
    assert response.status_code == 403


def test_active_consultation_for_each_role(client, doctor, patient, admin):
    assert client.get("/consultations/active", headers=patient["headers"]).json() is None

    started = start_consultation(client, doctor, patient)

    assert client.get("/consultations/active", headers=patient["headers"]).json()["id"] == started["id"]
    assert client.get("/consultations/active", headers=doctor["headers"]).json()["id"] == started["id"]
    assert client.get("/consultations/active", headers=admin["headers"]).status_code == 403

    close_consultation(client, doctor, started["id"])
    assert client.get("/consultations/active", headers=doctor["headers"]).json() is None


def test_get_consultation_participants_only(client, doctor, patient, other_patient):
    consultation = create_consultation(client, doctor, patient)

    assert client.get(f"/consultations/{consultation['id']}", headers=patient["headers"]).status_code == 200
    assert (
        client.get(f"/consultations/{consultation['id']}", headers=other_patient["headers"]).status_code
        == 403
    )
    assert client.get("/consultations/unknown", headers=doctor["headers"]).status_code == 404
