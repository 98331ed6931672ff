def test_get_and_update_me(client, patient):
    response = client.patch("/users/me", json={"displayName": "  Patricia  "}, headers=patient["headers"])

    assert response.status_code == 200
    assert response.json()["displayName"] == "Patricia"
    assert client.get("/users/me", headers=patient["headers"]).json()["displayName"] == "Patricia"


def test_blank_display_name_clears_it(client, doctor):
    response = client.patch("/users/me", json={"displayName": "   "}, headers=doctor["headers"])
    assert response.json()["displayName"] is None


def test_user_summary_hides_email(client, doctor, patient):
    response = client.get(f"/users/{doctor['id']}", headers=patient["headers"])

    assert response.status_code == 200
    assert response.json() == {"id": doctor["id"], "role": "doctor", "displayName": "Dr. House"}


def test_user_summary_unknown_user(client, patient):
    assert client.get("/users/does-not-exist", headers=patient["headers"]).status_code == 404
