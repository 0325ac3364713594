import pytest
from fastapi.testclient import TestClient

from config import TestingSettings
from main import create_app


@pytest.fixture
def settings(tmp_path):
    return TestingSettings(data_dir=tmp_path)


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def alice(client):
    """A registered account with nothing earned yet."""
    response = client.post("/signup", json={
        "username": "alice",
        "email": "a@x.com",
        "password": "pw1"
    })
    assert response.status_code == 200
    return "a@x.com"
