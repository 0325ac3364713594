import json
from unittest.mock import patch

import pytest

from fastapi.testclient import TestClient

from config import Settings, TestingSettings, get_settings, get_settings_for_environment
from errors import StorageError
from main import create_app


class TestSignup:
    """Account creation."""

    def test_signup_success(self, client):
        response = client.post("/signup", json={
            "username": "alice",
            "email": "a@x.com",
            "password": "pw1"
        })

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Signup successful!"}

    def test_signup_missing_fields(self, client):
        response = client.post("/signup", json={"username": "alice", "email": "a@x.com"})

        assert response.status_code == 400
        assert response.json() == {"message": "Username, email, and password are required."}

    def test_signup_empty_field(self, client):
        response = client.post("/signup", json={"username": "", "email": "a@x.com", "password": "pw"})

        assert response.status_code == 400

    def test_duplicate_email_rejected(self, client, alice):
        """Other fields do not matter once the email is taken."""
        response = client.post("/signup", json={
            "username": "someone else",
            "email": alice,
            "password": "different"
        })

        assert response.status_code == 400
        assert response.json() == {"message": "User already exists."}
        assert client.get(f"/user/{alice}").json()["username"] == "alice"

    def test_profile_after_signup(self, client, alice):
        response = client.get(f"/user/{alice}")

        assert response.status_code == 200
        assert response.json() == {
            "email": "a@x.com",
            "username": "alice",
            "earnings": 0,
            "screenTime": 0,
            "withdrawRequests": [],
            "lastLogin": None
        }

    def test_password_stored_hashed(self, client, alice, settings):
        with open(settings.users_path, encoding="utf-8") as f:
            stored = json.load(f)

        assert stored[alice]["password"] != "pw1"
        assert stored[alice]["password"].startswith("$2b$")

    def test_malformed_json(self, client):
        response = client.post(
            "/signup",
            content="{'invalid': 'json'",
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json() == {"message": "Invalid request body."}


class TestLogin:
    """Authentication."""

    def test_login_success(self, client, alice):
        response = client.post("/login", json={"email": alice, "password": "pw1"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Login successful!"
        assert data["username"] == "alice"
        assert data["lastLogin"].endswith("Z")
        assert data["token"]

        assert client.get(f"/user/{alice}").json()["lastLogin"] == data["lastLogin"]

    def test_wrong_password(self, client, alice):
        response = client.post("/login", json={"email": alice, "password": "nope"})

        assert response.status_code == 401
        assert response.json() == {"message": "Invalid credentials."}
        assert client.get(f"/user/{alice}").json()["lastLogin"] is None

    def test_unknown_email_looks_like_wrong_password(self, client):
        response = client.post("/login", json={"email": "ghost@x.com", "password": "pw1"})

        assert response.status_code == 401
        assert response.json() == {"message": "Invalid credentials."}

    def test_legacy_plaintext_password_is_upgraded(self, settings):
        settings.users_path.write_text(json.dumps({
            "old@x.com": {
                "username": "old",
                "password": "secret",
                "earnings": 5,
                "screenTime": 10
            }
        }), encoding="utf-8")

        with TestClient(create_app(settings)) as client:
            response = client.post("/login", json={"email": "old@x.com", "password": "secret"})
            assert response.status_code == 200

            profile = client.get("/user/old@x.com").json()
            assert profile["earnings"] == 5
            assert profile["withdrawRequests"] == []

        stored = json.loads(settings.users_path.read_text(encoding="utf-8"))
        assert stored["old@x.com"]["password"].startswith("$2b$")

        with TestClient(create_app(settings)) as client:
            response = client.post("/login", json={"email": "old@x.com", "password": "secret"})
            assert response.status_code == 200


class TestActivity:
    """Earnings and screen time accrual."""

    def test_record_earnings(self, client, alice):
        response = client.post("/activity", json={"email": alice, "earningsEarned": 100})

        assert response.status_code == 200
        assert response.json() == {"message": "Earnings updated!", "totalEarnings": 100}

        response = client.post("/activity", json={"email": alice, "earningsEarned": 2.5})
        assert response.json()["totalEarnings"] == 102.5

    def test_numeric_string_is_coerced(self, client, alice):
        response = client.post("/activity", json={"email": alice, "earningsEarned": "12"})

        assert response.status_code == 200
        assert response.json()["totalEarnings"] == 12

    def test_negative_earnings_rejected(self, client, alice):
        client.post("/activity", json={"email": alice, "earningsEarned": 10})
        response = client.post("/activity", json={"email": alice, "earningsEarned": -5})

        assert response.status_code == 400
        assert response.json() == {"message": "Invalid earnings value."}
        assert client.get(f"/user/{alice}").json()["earnings"] == 10

    def test_non_numeric_earnings_rejected(self, client, alice):
        for value in ["abc", None, True, [1], ""]:
            response = client.post("/activity", json={"email": alice, "earningsEarned": value})
            assert response.status_code == 400

        assert client.get(f"/user/{alice}").json()["earnings"] == 0

    def test_earnings_unknown_account(self, client):
        response = client.post("/activity", json={"email": "ghost@x.com", "earningsEarned": 5})

        assert response.status_code == 404
        assert response.json() == {"message": "User not found."}

    def test_record_screen_time(self, client, alice):
        client.post("/screentime", json={"email": alice, "timeSpent": 30})
        response = client.post("/screentime", json={"email": alice, "timeSpent": "15"})

        assert response.status_code == 200
        assert response.json() == {"message": "Screen time updated!", "totalScreenTime": 45}

    def test_invalid_screen_time(self, client, alice):
        response = client.post("/screentime", json={"email": alice, "timeSpent": "-1"})

        assert response.status_code == 400
        assert response.json() == {"message": "Invalid time value."}

    def test_screen_time_unknown_account(self, client):
        response = client.post("/screentime", json={"email": "ghost@x.com", "timeSpent": 1})

        assert response.status_code == 404

    def test_profile_unknown_account(self, client):
        response = client.get("/user/ghost@x.com")

        assert response.status_code == 404
        assert response.json() == {"message": "User not found."}

    @patch('services.logger')
    def test_logging_on_error(self, mock_logger, client):
        response = client.post("/activity", json={"email": "ghost@x.com", "earningsEarned": 5})

        assert response.status_code == 404
        mock_logger.warning.assert_called()


class TestPersistence:
    """State survives a restart."""

    def test_state_reloaded_from_disk(self, settings, client, alice):
        client.post("/activity", json={"email": alice, "earningsEarned": 70})
        client.post("/screentime", json={"email": alice, "timeSpent": 9})

        with TestClient(create_app(settings)) as restarted:
            profile = restarted.get(f"/user/{alice}").json()

        assert profile["earnings"] == 70
        assert profile["screenTime"] == 9

    def test_users_file_is_human_readable(self, settings, client, alice):
        text = settings.users_path.read_text(encoding="utf-8")

        assert text.startswith("{\n  ")
        assert json.loads(text)[alice]["username"] == "alice"

    def test_corrupt_file_refuses_to_start(self, settings):
        original = '{"old@x.com": {"username": "old", "password": "secret"},}'
        settings.users_path.write_text(original, encoding="utf-8")

        with pytest.raises(StorageError):
            create_app(settings)

        assert settings.users_path.read_text(encoding="utf-8") == original

    def test_wrong_document_shape_refuses_to_start(self, settings):
        settings.users_path.write_text('["old@x.com"]', encoding="utf-8")

        with pytest.raises(StorageError):
            create_app(settings)

    def test_storage_failure_is_500_and_rolled_back(self, app, client, alice):
        class BrokenStore:
            def load(self):
                return None

            def save(self, document):
                from errors import StorageError
                raise StorageError("disk full")

        app.state.account_repo.store = BrokenStore()
        response = client.post("/activity", json={"email": alice, "earningsEarned": 5})

        assert response.status_code == 500
        assert response.json() == {"message": "Internal server error."}
        assert client.get(f"/user/{alice}").json()["earnings"] == 0


class TestSessions:
    """Bearer sessions when they are required."""

    def make_client(self, settings):
        settings.require_session = True
        return TestClient(create_app(settings))

    def test_mutation_requires_token(self, settings):
        with self.make_client(settings) as client:
            client.post("/signup", json={"username": "alice", "email": "a@x.com", "password": "pw1"})
            response = client.post("/activity", json={"email": "a@x.com", "earningsEarned": 5})

            assert response.status_code == 401
            assert response.json() == {"message": "Missing or invalid session token."}

    def test_token_grants_access_to_own_account_only(self, settings):
        with self.make_client(settings) as client:
            client.post("/signup", json={"username": "alice", "email": "a@x.com", "password": "pw1"})
            client.post("/signup", json={"username": "bob", "email": "b@x.com", "password": "pw2"})
            token = client.post("/login", json={"email": "a@x.com", "password": "pw1"}).json()["token"]
            headers = {"Authorization": f"Bearer {token}"}

            response = client.post("/activity", json={"email": "a@x.com", "earningsEarned": 5}, headers=headers)
            assert response.status_code == 200

            response = client.post("/activity", json={"earningsEarned": 5}, headers=headers)
            assert response.json()["totalEarnings"] == 10

            response = client.post("/activity", json={"email": "b@x.com", "earningsEarned": 5}, headers=headers)
            assert response.status_code == 401
            assert client.get("/user/b@x.com").json()["earnings"] == 0

    def test_login_again_replaces_token(self, settings):
        with self.make_client(settings) as client:
            client.post("/signup", json={"username": "alice", "email": "a@x.com", "password": "pw1"})
            tokens = [
                client.post("/login", json={"email": "a@x.com", "password": "pw1"}).json()["token"]
                for _ in range(50)
            ]
            sessions = client.app.state.sessions

            assert len(sessions.tokens) == 1
            stale = client.post("/activity", json={"earningsEarned": 1}, headers={"Authorization": f"Bearer {tokens[0]}"})
            assert stale.status_code == 401
            fresh = client.post("/activity", json={"earningsEarned": 1}, headers={"Authorization": f"Bearer {tokens[-1]}"})
            assert fresh.status_code == 200

    def test_logout_revokes_token(self, settings):
        with self.make_client(settings) as client:
            client.post("/signup", json={"username": "alice", "email": "a@x.com", "password": "pw1"})
            token = client.post("/login", json={"email": "a@x.com", "password": "pw1"}).json()["token"]
            headers = {"Authorization": f"Bearer {token}"}

            response = client.post("/logout", headers=headers)
            assert response.status_code == 200
            assert response.json() == {"message": "Logged out."}

            response = client.post("/activity", json={"earningsEarned": 1}, headers=headers)
            assert response.status_code == 401
            assert client.app.state.sessions.tokens == {}


class TestRateLimiting:
    """Credential endpoints are rate limited per app."""

    def test_login_limit_exceeded(self, tmp_path):
        settings = TestingSettings(data_dir=tmp_path, rate_limit_enabled=True, rate_limit_per_minute=2)
        with TestClient(create_app(settings)) as client:
            client.post("/signup", json={"username": "alice", "email": "a@x.com", "password": "pw1"})
            for _ in range(2):
                assert client.post("/login", json={"email": "a@x.com", "password": "pw1"}).status_code == 200

            response = client.post("/login", json={"email": "a@x.com", "password": "pw1"})
            assert response.status_code == 429

    def test_signup_limit_uses_app_settings(self, tmp_path):
        limited = create_app(TestingSettings(data_dir=tmp_path / "a", rate_limit_enabled=True, rate_limit_per_minute=1))
        # A later app with limiting off must not switch it off for the first
        create_app(TestingSettings(data_dir=tmp_path / "b"))

        with TestClient(limited) as client:
            first = client.post("/signup", json={"username": "a", "email": "a@x.com", "password": "pw"})
            second = client.post("/signup", json={"username": "b", "email": "b@x.com", "password": "pw"})

        assert first.status_code == 200
        assert second.status_code == 429

    def test_disabled_limiter_never_blocks(self, client):
        for i in range(40):
            response = client.post("/signup", json={"username": "u", "email": f"{i}@x.com", "password": "pw"})
            assert response.status_code == 200


class TestEnvironments:
    """APP_ENV picks the settings class."""

    @pytest.fixture(autouse=True)
    def fresh_settings(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        get_settings.cache_clear()
        yield
        get_settings.cache_clear()

    def test_default_environment(self, monkeypatch):
        monkeypatch.delenv("APP_ENV", raising=False)

        settings = get_settings()
        assert type(settings) is Settings
        assert settings.require_session is False

    def test_production_environment_requires_sessions(self, monkeypatch, tmp_path):
        monkeypatch.setenv("APP_ENV", "production")

        settings = get_settings()
        assert settings.require_session is True
        assert settings.allowed_origins == []

        app = create_app(get_settings_for_environment(
            "production", data_dir=tmp_path, rate_limit_enabled=False, bcrypt_rounds=4
        ))
        with TestClient(app) as client:
            client.post("/signup", json={"username": "alice", "email": "a@x.com", "password": "pw1"})
            response = client.post("/activity", json={"email": "a@x.com", "earningsEarned": 5})
            assert response.status_code == 401

    def test_testing_environment(self):
        settings = get_settings_for_environment("testing")

        assert settings.rate_limit_enabled is False
        assert settings.bcrypt_rounds == 4


class TestHealthAndUtility:
    """Health check and utility endpoints."""

    def test_health_check(self, client, alice):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "accounts_count": 1, "feedbacks_count": 0}

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert "message" in response.json()
