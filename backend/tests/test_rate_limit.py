import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from gatekeeper.core.rate_limit import client_address
from gatekeeper.main import create_app

LOGIN = "/api/v1/auth/login"
BODY = {"email": "nobody@example.com", "password": "Secret123"}


def _request(headers=None, client=("10.0.0.9", 5000)):
    raw_headers = [(name.lower().encode(), value.encode()) for name, value in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw_headers, "client": client})


@pytest.fixture
def limited_client(settings):
    settings = settings.model_copy(update={"RATE_LIMIT_ENABLED": True, "RATE_LIMIT_MAX": 2})
    with TestClient(create_app(settings)) as client:
        yield client


def test_client_address_prefers_first_forwarded_hop():
    assert client_address(_request({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})) == "203.0.113.7"
    assert client_address(_request({"X-Forwarded-For": " "})) == "10.0.0.9"
    assert client_address(_request()) == "10.0.0.9"


def test_login_is_rate_limited(limited_client):
    assert limited_client.post(LOGIN, json=BODY).status_code == 401
    assert limited_client.post(LOGIN, json=BODY).status_code == 401

    response = limited_client.post(LOGIN, json=BODY)

    assert response.status_code == 429
    assert response.json() == {"success": False, "message": "Too many requests, please try again later"}


def test_forwarded_clients_get_separate_windows(limited_client):
    first = {"X-Forwarded-For": "203.0.113.7"}
    second = {"X-Forwarded-For": "198.51.100.4"}
    for _ in range(2):
        limited_client.post(LOGIN, json=BODY, headers=first)

    assert limited_client.post(LOGIN, json=BODY, headers=first).status_code == 429
    assert limited_client.post(LOGIN, json=BODY, headers=second).status_code == 401


def test_each_endpoint_counts_separately(limited_client):
    for _ in range(3):
        limited_client.post(LOGIN, json=BODY)

    response = limited_client.post("/api/v1/auth/forgot-password", json={"email": "nobody@example.com"})
    assert response.status_code == 404


def test_unlimited_routes_are_untouched(limited_client):
    for _ in range(5):
        assert limited_client.get("/health").status_code == 200


def test_limits_can_be_switched_off(client):
    for _ in range(5):
        assert client.post(LOGIN, json=BODY).status_code == 401
