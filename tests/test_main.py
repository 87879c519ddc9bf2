from datetime import datetime

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session


def create_person(client, name="Test Person", email="test@example.com"):
    r = client.post("/people/", json={"full_name": name, "email": email})
    assert r.status_code == 200
    return r.json()["id"]


def create_book(client, title="Test Book", copies=1, **extra):
    r = client.post("/books/", json={"title": title, "author": "Author", "copies": copies, **extra})
    assert r.status_code == 200
    return r.json()["id"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_create_person_and_book_and_borrow_return(client):
    person_id = create_person(client)
    book_id = create_book(client, isbn="978-0-06-065292-0")
    assert client.get(f"/books/{book_id}").json()["isbn"] == "9780060652920"

    # Borrow book
    r = client.post("/loans/", json={"book_id": book_id, "person_id": person_id})
    assert r.status_code == 200
    loan = r.json()
    assert loan["status"] == "Active"
    assert loan["loan_date"] == "2024-01-10"
    assert loan["expected_return_date"] == "2024-01-24"
    assert loan["derived"] == {"label": "Active", "is_late": False, "late_days": 0}
    assert loan["book"]["title"] == "Test Book"
    assert loan["person"]["full_name"] == "Test Person"
    assert client.get(f"/books/{book_id}").json()["status"] == "Loaned"

    # Return book
    r = client.post(f"/loans/{loan['id']}/return")
    assert r.status_code == 200
    returned = r.json()["loan"]
    assert returned["status"] == "Returned"
    assert returned["actual_return_date"] == "2024-01-10"
    assert client.get(f"/books/{book_id}").json()["status"] == "Available"

    # Returning twice is rejected
    r = client.post(f"/loans/{loan['id']}/return")
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_transition"


def test_renew_extends_due_date(client, clock):
    person_id = create_person(client)
    book_id = create_book(client)
    loan_id = client.post("/loans/", json={"book_id": book_id, "person_id": person_id, "days": 3}).json()["id"]

    clock.now = datetime(2024, 1, 20, 9, 30)
    r = client.post(f"/loans/{loan_id}/renew")
    assert r.status_code == 200
    body = r.json()
    assert body["loan"]["status"] == "Renewed"
    assert body["loan"]["expected_return_date"] == "2024-02-04"
    assert body["loan"]["renewal_count"] == 1
    assert body["message"] == "New return date: 04/02/2024"
    assert client.get(f"/books/{book_id}").json()["status"] == "Loaned"


def test_overdue_loans_are_listed_by_derived_label(client, clock):
    person_id = create_person(client)
    late_book = create_book(client, title="Late Book")
    fine_book = create_book(client, title="On Time Book")
    client.post("/loans/", json={"book_id": late_book, "person_id": person_id, "days": 3})
    client.post("/loans/", json={"book_id": fine_book, "person_id": person_id, "days": 30})

    clock.now = datetime(2024, 1, 20, 9, 30)
    r = client.get("/loans/", params={"status": "Overdue"})
    assert r.status_code == 200
    loans = r.json()
    assert [loan["book"]["title"] for loan in loans] == ["Late Book"]
    assert loans[0]["status"] == "Active"
    assert loans[0]["derived"] == {"label": "Overdue", "is_late": True, "late_days": 8}

    metrics = client.get("/metrics").json()
    assert metrics["active_loans"] == 2
    assert metrics["overdue_loans"] == 1
    assert metrics["available_books"] == 0
    assert len(metrics["recent_loans"]) == 2


def test_loan_search_matches_person_name(client):
    ana = create_person(client, name="Ana Lima", email="ana@example.com")
    bruno = create_person(client, name="Bruno Reis", email="bruno@example.com")
    client.post("/loans/", json={"book_id": create_book(client, title="Salmos"), "person_id": ana})
    client.post("/loans/", json={"book_id": create_book(client, title="Provérbios"), "person_id": bruno})

    loans = client.get("/loans/", params={"q": "bruno"}).json()
    assert [loan["person"]["full_name"] for loan in loans] == ["Bruno Reis"]


def test_reservation_holds_book_for_reserver(client):
    ana = create_person(client, name="Ana", email="ana@example.com")
    bruno = create_person(client, name="Bruno", email="bruno@example.com")
    carla = create_person(client, name="Carla", email="carla@example.com")
    book_id = create_book(client)

    loan_id = client.post("/loans/", json={"book_id": book_id, "person_id": ana}).json()["id"]
    r = client.post("/reservations/", json={"book_id": book_id, "person_id": bruno})
    assert r.status_code == 200
    reservation = r.json()
    assert reservation["status"] == "Active"
    assert reservation["derived"]["days_remaining"] == 7
    assert client.get(f"/books/{book_id}").json()["status"] == "Loaned"

    client.post(f"/loans/{loan_id}/return")
    assert client.get(f"/books/{book_id}").json()["status"] == "Reserved"

    # someone else cannot take the held copy
    r = client.post("/loans/", json={"book_id": book_id, "person_id": carla})
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_transition"

    # the reserver can, and the reservation is used up
    r = client.post("/loans/", json={"book_id": book_id, "person_id": bruno})
    assert r.status_code == 200
    assert client.get(f"/reservations/{reservation['id']}").json()["status"] == "Fulfilled"
    assert client.get(f"/books/{book_id}").json()["status"] == "Loaned"


def test_duplicate_reservation_is_rejected(client):
    person_id = create_person(client)
    book_id = create_book(client)
    client.post("/reservations/", json={"book_id": book_id, "person_id": person_id})
    r = client.post("/reservations/", json={"book_id": book_id, "person_id": person_id})
    assert r.status_code == 409


def test_fulfill_and_cancel_reservation(client):
    person_id = create_person(client)
    book_id = create_book(client)
    reservation_id = client.post("/reservations/", json={"book_id": book_id, "person_id": person_id}).json()["id"]

    r = client.post(f"/reservations/{reservation_id}/fulfill")
    assert r.status_code == 200
    assert r.json()["reservation"]["status"] == "Fulfilled"
    assert r.json()["follow_up"]

    r = client.post(f"/reservations/{reservation_id}/cancel")
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_transition"


def test_expired_reservation(client, clock):
    person_id = create_person(client)
    book_id = create_book(client)
    reservation_id = client.post("/reservations/", json={"book_id": book_id, "person_id": person_id}).json()["id"]
    assert client.get(f"/books/{book_id}").json()["status"] == "Reserved"

    clock.now = datetime(2024, 1, 18, 9, 30)
    expired = client.get("/reservations/", params={"status": "Expired"}).json()
    assert [r["id"] for r in expired] == [reservation_id]
    assert expired[0]["status"] == "Active"
    assert expired[0]["derived"]["is_expired"] is True
    assert client.get(f"/books/{book_id}").json()["status"] == "Available"

    assert client.post(f"/reservations/{reservation_id}/fulfill").status_code == 409
    r = client.post(f"/reservations/{reservation_id}/cancel")
    assert r.status_code == 200
    assert r.json()["reservation"]["status"] == "Cancelled"


def test_missing_records_are_tagged_not_found(client):
    for path in ("/loans/99/return", "/loans/99/renew", "/reservations/99/cancel"):
        r = client.post(path)
        assert r.status_code == 404
        assert r.json()["error"] == "not_found"
    r = client.post("/loans/", json={"book_id": 99, "person_id": 99})
    assert r.status_code == 404


def test_book_requires_title_and_author(client):
    r = client.post("/books/", json={"title": "No Author"})
    assert r.status_code == 422
    assert r.json()["error"] == "validation_failure"

    r = client.post("/books/", json={"title": "   ", "author": "Someone"})
    assert r.status_code == 422


def test_duplicate_email_is_rejected(client):
    create_person(client)
    r = client.post("/people/", json={"full_name": "Other", "email": "test@example.com"})
    assert r.status_code == 422
    assert r.json()["error"] == "validation_failure"


def test_book_under_maintenance_cannot_be_borrowed(client):
    person_id = create_person(client)
    book_id = create_book(client)
    r = client.put(f"/books/{book_id}", json={"under_maintenance": True})
    assert r.status_code == 200
    assert r.json()["status"] == "UnderMaintenance"

    r = client.post("/loans/", json={"book_id": book_id, "person_id": person_id})
    assert r.status_code == 409


def test_book_soft_delete(client):
    person_id = create_person(client)
    book_id = create_book(client)
    loan_id = client.post("/loans/", json={"book_id": book_id, "person_id": person_id}).json()["id"]

    assert client.delete(f"/books/{book_id}").status_code == 409

    client.post(f"/loans/{loan_id}/return")
    assert client.delete(f"/books/{book_id}").json() == {"ok": True}
    assert client.get(f"/books/{book_id}").status_code == 404
    assert client.get("/books/").json() == []


def test_list_books_filters(client):
    person_id = create_person(client)
    create_book(client, title="Bíblia de Estudo", category="Estudos Bíblicos")
    loaned = create_book(client, title="Missões Hoje", category="Missões")
    client.post("/loans/", json={"book_id": loaned, "person_id": person_id})

    assert [b["title"] for b in client.get("/books/", params={"category": "Missões"}).json()] == ["Missões Hoje"]
    assert [b["title"] for b in client.get("/books/", params={"status": "Available"}).json()] == ["Bíblia de Estudo"]
    assert [b["title"] for b in client.get("/books/", params={"q": "estudo"}).json()] == ["Bíblia de Estudo"]


def test_book_with_live_reservation_cannot_be_deleted(client):
    person_id = create_person(client)
    book_id = create_book(client)
    reservation_id = client.post("/reservations/", json={"book_id": book_id, "person_id": person_id}).json()["id"]

    r = client.delete(f"/books/{book_id}")
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_transition"
    assert client.get(f"/books/{book_id}").status_code == 200

    client.post(f"/reservations/{reservation_id}/cancel")
    assert client.delete(f"/books/{book_id}").json() == {"ok": True}


def test_deleting_book_cancels_lapsed_reservations(client, clock):
    person_id = create_person(client)
    book_id = create_book(client)
    reservation_id = client.post("/reservations/", json={"book_id": book_id, "person_id": person_id}).json()["id"]

    clock.now = datetime(2024, 1, 18, 9, 30)
    assert client.delete(f"/books/{book_id}").json() == {"ok": True}
    assert client.get(f"/reservations/{reservation_id}").json()["status"] == "Cancelled"
    r = client.post(f"/reservations/{reservation_id}/fulfill")
    assert r.status_code == 409


def test_update_cannot_reuse_another_books_isbn(client):
    create_book(client, title="First", isbn="978-0-06-065292-0")
    second = create_book(client, title="Second")

    r = client.post("/books/", json={"title": "Third", "author": "Author", "isbn": "9780060652920"})
    assert r.status_code == 422
    r = client.put(f"/books/{second}", json={"isbn": "978-0-06-065292-0"})
    assert r.status_code == 422
    assert r.json()["error"] == "validation_failure"
    assert client.get(f"/books/{second}").json()["isbn"] is None


def test_update_keeps_own_isbn(client):
    book_id = create_book(client, isbn="9780060652920")
    r = client.put(f"/books/{book_id}", json={"isbn": "978-0-06-065292-0", "title": "Renamed"})
    assert r.status_code == 200
    assert r.json()["isbn"] == "9780060652920"


def test_database_write_failure_is_tagged(client, monkeypatch):
    book_id = create_book(client)

    def fail_commit(self):
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(Session, "commit", fail_commit)
    r = client.post("/people/", json={"full_name": "Ana", "email": "ana@example.com"})
    assert r.status_code == 502
    assert r.json()["error"] == "upstream_failure"

    r = client.put(f"/books/{book_id}", json={"title": "Renamed"})
    assert r.status_code == 502
    assert r.json()["error"] == "upstream_failure"


def test_book_categories(client):
    categories = client.get("/books/categories").json()
    assert "Teologia" in categories
    assert "Outro" in categories

    r = client.post("/books/", json={"title": "Dom Casmurro", "author": "Machado de Assis", "category": "Ficção"})
    assert r.status_code == 422
    assert r.json()["error"] == "validation_failure"

    book_id = create_book(client, category="Teologia")
    assert client.put(f"/books/{book_id}", json={"category": "Ficção"}).status_code == 422
    assert client.put(f"/books/{book_id}", json={"category": "Devocionais"}).json()["category"] == "Devocionais"
