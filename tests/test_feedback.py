import json

from fastapi.testclient import TestClient

from main import create_app


class TestFeedback:
    """Feedback submission and listing."""

    def test_submit_feedback(self, client):
        response = client.post("/submit-feedback", json={
            "name": "Alice",
            "email": "a@x.com",
            "message": "Great app"
        })

        assert response.status_code == 200
        assert response.json() == {"message": "Feedback submitted. Thank you!"}

        entries = client.get("/admin/feedbacks").json()
        assert len(entries) == 1
        assert entries[0]["name"] == "Alice"
        assert entries[0]["message"] == "Great app"
        assert entries[0]["date"].endswith("Z")

    def test_missing_fields(self, client):
        response = client.post("/submit-feedback", json={"name": "Alice", "email": "a@x.com"})

        assert response.status_code == 400
        assert response.json() == {"message": "Name, email, and message are required."}
        assert client.get("/admin/feedbacks").json() == []

    def test_listing_keeps_submission_order(self, client):
        for i in range(3):
            client.post("/submit-feedback", json={"name": f"n{i}", "email": "e@x.com", "message": f"m{i}"})

        assert [e["message"] for e in client.get("/admin/feedbacks").json()] == ["m0", "m1", "m2"]

    def test_feedback_does_not_need_an_account(self, client):
        response = client.post("/submit-feedback", json={"name": "Guest", "email": "g@x.com", "message": "hi"})

        assert response.status_code == 200
        assert client.get("/health").json()["accounts_count"] == 0

    def test_feedback_persisted_as_array(self, settings, client):
        client.post("/submit-feedback", json={"name": "Alice", "email": "a@x.com", "message": "hi"})

        stored = json.loads(settings.feedbacks_path.read_text(encoding="utf-8"))
        assert isinstance(stored, list)
        assert stored[0]["email"] == "a@x.com"

        with TestClient(create_app(settings)) as restarted:
            assert len(restarted.get("/admin/feedbacks").json()) == 1
