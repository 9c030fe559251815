from database import FetchError


def add_student(client, name, class_name="Grade 1", **extra):
    response = client.post("/students", json={"name": name, "class": class_name, **extra})
    assert response.status_code == 201
    return response.json()["id"]


def save_family(client, student_id, **fields):
    return client.post("/families", json={"student_id": student_id, **fields})


def test_health(client):
    assert client.get("/health").json()["ok"] is True
    status = client.get("/test").json()
    assert status["database"] == "memory"


def test_slots_endpoint(client):
    assert client.get("/slots").json()["slots"][0] == "29th"


def test_student_crud(client):
    student_id = add_student(client, "Amy", when_reach="30th 9:00AM")

    fetched = client.get(f"/students/{student_id}").json()
    assert fetched["class"] == "Grade 1"
    assert fetched["when_reach"] == "30th 9:00 am"

    response = client.put(f"/students/{student_id}", json={"name": "Amy B", "class": "Grade 2"})
    assert response.json() == {"success": True, "id": student_id, "error": None}
    assert client.get(f"/students/{student_id}").json()["name"] == "Amy B"

    assert client.get("/students", params={"q": "amy"}).json()["items"][0]["id"] == int(student_id)

    assert client.delete(f"/students/{student_id}").json()["success"] is True
    assert client.get(f"/students/{student_id}").status_code == 404
    assert client.delete(f"/students/{student_id}").status_code == 404


def test_submit_attendance(client):
    student_id = add_student(client, "Bob")

    response = client.patch(
        f"/students/{student_id}/attendance",
        json={"male": 2, "female": 1, "when_reach": "29th"},
    )

    assert response.status_code == 200
    student = client.get(f"/students/{student_id}").json()
    assert (student["male"], student["female"], student["when_reach"]) == (2, 1, "29th")


def test_invalid_payloads_are_rejected(client):
    student_id = add_student(client, "Bob")
    bad_slot = client.patch(f"/students/{student_id}/attendance", json={"male": 1, "when_reach": "31st"})
    negative = client.post("/students", json={"name": "Cal", "class": "A", "male": -2})
    assert bad_slot.status_code == 422
    assert negative.status_code == 422


def test_save_family_creates_then_updates(client):
    student_id = add_student(client, "Amy")

    first = save_family(client, student_id, mother_name="Jane")
    second = save_family(client, student_id, father_name="John")

    assert first.json()["success"] and second.json()["id"] == first.json()["id"]
    family = client.get(f"/students/{student_id}/family").json()
    assert family["father_name"] == "John"
    assert family["mother_name"] is None


def test_save_family_for_unknown_student(client):
    assert save_family(client, "99", mother_name="Jane").status_code == 404
    assert client.get("/students/99/family").status_code == 404


def test_roster_orders_and_filters(client):
    bob = add_student(client, "Bob", "B")
    amy = add_student(client, "Amy", "A")
    cal = add_student(client, "Cal", "A")
    save_family(client, amy, mother_name="Jane")
    save_family(client, cal)

    roster = client.get("/roster").json()
    assert [(s["name"], s["is_registered"]) for s in roster["items"]] == [
        ("Amy", True),
        ("Bob", False),
        ("Cal", False),
    ]
    assert roster["classes"] == ["A", "B"]
    assert roster["items"][0]["family_details"]["mother_name"] == "Jane"

    unregistered = client.get("/roster", params={"registration": "unregistered", "class_name": "A"}).json()
    assert [s["id"] for s in unregistered["items"]] == [int(cal)]
    assert client.get("/roster", params={"q": "jane"}).json()["items"][0]["id"] == int(amy)
    assert client.get("/roster", params={"registration": "maybe"}).status_code == 422

    by_class = client.get("/roster/by-class").json()
    assert [s["name"] for s in by_class["A"]] == ["Amy", "Cal"]
    assert int(bob) in [s["id"] for s in by_class["B"]]


def test_family_listing_and_delete(client):
    amy = add_student(client, "Amy", "A")
    record_id = save_family(client, amy, sister_name="Sue").json()["id"]

    listing = client.get("/families").json()
    assert listing[0]["student_name"] == "Amy"
    assert listing[0]["is_registered"] is True

    assert client.delete(f"/families/{record_id}").json()["success"] is True
    assert client.get("/families").json() == []


def test_summaries(client):
    amy = add_student(client, "Amy", "A", male=2, female=1, when_reach="29th")
    add_student(client, "Bob", "A", male=0, female=3, when_reach="29th")
    add_student(client, "Cal", "B", male=1)
    save_family(client, amy, others=[{"relationship": "Aunt", "name": "Lu"}])

    attendance = client.get("/summary/attendance").json()
    assert (attendance["total_males"], attendance["total_females"], attendance["grand_total"]) == (3, 4, 7)
    assert attendance["by_slot"] == {"29th": {"male": 2, "female": 4}}

    registrations = client.get("/summary/registrations").json()
    assert registrations == {
        "total_students": 3,
        "total_registered": 1,
        "total_unregistered": 2,
        "counts_by_class": {"A": 1},
    }


def test_fetch_failure_maps_to_bad_gateway(client, store, monkeypatch):
    def broken():
        raise FetchError("Failed to fetch attendance: timed out")

    monkeypatch.setattr(store.students, "list", broken)

    response = client.get("/roster")

    assert response.status_code == 502
    assert "timed out" in response.json()["detail"]


def test_bad_stored_row_maps_to_bad_gateway(client, store):
    store.students.load([{"id": 1, "name": "Amy", "class": "A", "male": -3}])
    assert client.get("/summary/attendance").status_code == 502


def test_partial_attendance_update_keeps_other_fields(client):
    student_id = add_student(client, "Amy", "A")
    client.patch(f"/students/{student_id}/attendance", json={"male": 2, "female": 1, "when_reach": "29th"})

    client.patch(f"/students/{student_id}/attendance", json={"male": 3})

    student = client.get(f"/students/{student_id}").json()
    assert (student["male"], student["female"], student["when_reach"]) == (3, 1, "29th")


def test_rename_keeps_check_in_data(client):
    student_id = add_student(client, "Amy", "A", male=2, female=1, when_reach="29th")

    client.put(f"/students/{student_id}", json={"name": "Amy B", "class": "A"})

    student = client.get(f"/students/{student_id}").json()
    assert student["name"] == "Amy B"
    assert (student["male"], student["female"], student["when_reach"]) == (2, 1, "29th")


def test_student_list_limit_must_be_positive(client):
    add_student(client, "Amy")
    add_student(client, "Bob")
    assert client.get("/students", params={"limit": -1}).status_code == 422
    assert len(client.get("/students", params={"limit": 1}).json()["items"]) == 1


def test_status_keeps_store_fields(client):
    status = client.get("/test").json()
    assert status["database"] == "memory"
    assert status["database_name_env"] in ("✅ Set", "❌ Not Set")
    assert "database_name" not in status


def test_write_response_hides_missing_flag(client):
    response = client.delete("/families/404")
    assert response.status_code == 404
    student_id = add_student(client, "Amy")
    assert "missing" not in client.delete(f"/students/{student_id}").json()
