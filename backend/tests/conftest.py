import pytest
from fastapi.testclient import TestClient

from gatekeeper.core.config import Settings
from gatekeeper.main import create_app
from gatekeeper.models.user import User, UserRole
from gatekeeper.services.email_service import EmailService

PASSWORD = "Secret123"


class RecordingEmailService(EmailService):
    """Keeps outgoing mail in memory and remembers the raw tokens it carried"""

    def __init__(self, settings):
        super().__init__(settings)
        self.outbox = []
        self.verification_tokens = {}
        self.reset_tokens = {}

    def send_email(self, to, subject, html):
        self.outbox.append({"to": to, "subject": subject, "html": html})
        return True

    def send_verification_email(self, to, name, token):
        self.verification_tokens[to] = token
        return super().send_verification_email(to, name, token)

    def send_password_reset_email(self, to, name, token):
        self.reset_tokens[to] = token
        return super().send_password_reset_email(to, name, token)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'gatekeeper.db'}",
        JWT_SECRET="test-access-secret",
        REFRESH_TOKEN_SECRET="test-refresh-secret",
        BCRYPT_ROUNDS=4,
        SCHEDULER_ENABLED=False,
        RATE_LIMIT_ENABLED=False,
        EMAIL_BACKEND="console",
    )


@pytest.fixture
def app(settings):
    app = create_app(settings)
    app.state.email = RecordingEmailService(settings)
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def email(app):
    return app.state.email


@pytest.fixture
def db(app, client):
    session = app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def drain(app):
    """Wait for queued audit writes to land in the database"""
    def _drain():
        app.state.audit_channel.drain(timeout=5)
    return _drain


def register(client, email="alice@example.com", name="Alice", password=PASSWORD):
    return client.post("/api/v1/auth/register", json={"name": name, "email": email, "password": password})


def login(client, email="alice@example.com", password=PASSWORD):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password})


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_token(client):
    """Access token of a freshly registered user"""
    response = register(client)
    assert response.status_code == 201
    return response.json()["data"]["token"]


@pytest.fixture
def admin_token(app, client):
    register(client, email="admin@example.com", name="Admin")
    session = app.state.session_factory()
    try:
        admin = session.query(User).filter(User.email == "admin@example.com").one()
        admin.role = UserRole.ADMIN.value
        admin.is_email_verified = True
        session.commit()
    finally:
        session.close()
    # Role lives in the token claims, so log in again after the promotion
    response = login(client, email="admin@example.com")
    assert response.status_code == 200
    return response.json()["data"]["token"]
