# tests/smoke_test.py
# This file checks that the app starts, key pages work, and one full test can be taken.
# It uses the JSON file store, so no hosted data service is needed.

import re


def must_200(resp, path):
    assert resp.status_code == 200, f"{path} returned {resp.status_code}"


def test_public_pages(client):
    must_200(client.get("/"), "/")
    must_200(client.get("/healthz"), "/healthz")
    must_200(client.get("/auth/login"), "/auth/login")
    must_200(client.get("/auth/sign-up"), "/auth/sign-up")
    must_200(client.get("/auth/sign-up-success"), "/auth/sign-up-success")
    must_200(client.get("/auth/error"), "/auth/error")

    data = client.get("/health").get_json()
    assert data["status"] == "healthy"
    assert data["store_backend"] == "json"


def test_sign_up_then_sign_in(client, service_store):
    r = client.post("/auth/sign-up", data={
        "email": "new@example.com", "password": "password123", "confirm_password": "password123"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/auth/sign-up-success")

    account = service_store.get("accounts", {"email": "new@example.com"})
    assert account is not None
    assert account["is_admin"] is False
    assert account["trial_ends_at"] is not None

    r = client.post("/auth/login", data={"email": "new@example.com", "password": "password123"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard")
    must_200(client.get("/dashboard"), "/dashboard")


def test_take_a_test_end_to_end(client, make_user, sign_in_as, seed_test, service_store):
    make_user("student@example.com")
    sign_in_as("student@example.com")
    _, test, questions = seed_test([("2+2=?", 1), ("3+3=?", 2)])

    page = client.get("/dashboard")
    must_200(page, "/dashboard")
    assert b"Arithmetic" in page.data

    r = client.get(f"/test/{test['id']}")
    must_200(r, "/test/<id>")
    assert b"let timeRemaining = 1800;" in r.data
    action = re.search(r'action="([^"]+/submit)"', r.data.decode()).group(1)

    r = client.post(action, data={
        f"answer_{questions[0]['id']}": "1",
        f"answer_{questions[1]['id']}": "0",
    })
    assert r.status_code == 302
    results_path = r.headers["Location"]
    assert f"/test/{test['id']}/results/" in results_path

    r = client.get(results_path)
    must_200(r, results_path)
    assert b"50%" in r.data
    assert b"Failed" in r.data

    attempts = service_store.select("attempts", {"test_id": test["id"]})
    assert len(attempts) == 1
    assert attempts[0]["score"] == 50
    assert attempts[0]["passed"] is False
    assert len(service_store.select("answer_records", {"attempt_id": attempts[0]["id"]})) == 2

    must_200(client.get("/dashboard/results"), "/dashboard/results")
