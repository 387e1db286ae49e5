import importlib

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from laos import app as app_module
from laos.api import schemas


@pytest.fixture
def reload_app(monkeypatch):
    """Reload the app module so env-driven CORS settings are re-read."""

    def _reload(**env):
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        return importlib.reload(app_module)

    yield _reload
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    importlib.reload(app_module)


def test_security_headers_and_cors(reload_app):
    module = reload_app()
    client = TestClient(module.app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_allowed_origins_default():
    origins = app_module._allowed_origins()
    assert "http://localhost" in origins
    assert "http://127.0.0.1:5173" in origins


def test_allowed_origins_override(reload_app):
    module = reload_app(CORS_ALLOW_ORIGINS="https://example.com, https://demo.local")
    assert module._allowed_origins() == ["https://example.com", "https://demo.local"]


def test_preflight_allows_token_headers(reload_app):
    module = reload_app()
    client = TestClient(module.app)
    response = client.options(
        "/v1/me",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "GET",
            "Access-Control-Request-Headers": "Authorization-Refresh",
        },
    )

    assert response.status_code == 200
    assert "authorization-refresh" in response.headers["access-control-allow-headers"].lower()


def test_register_request_normalizes_fields():
    body = schemas.RegisterRequest(
        local_id=" alice ",
        password="pw1",
        nickname="  Al\u200b ",
        email=" Alice@Example.COM ",
    )
    assert body.local_id == "alice"
    assert body.nickname == "Al"
    assert body.email == "alice@example.com"


@pytest.mark.parametrize(
    "email", ["no-at-sign", "a@b", "a@@b.com", "a b@example.com", "a@-bad-.com"]
)
def test_invalid_emails_rejected(email):
    with pytest.raises(ValidationError):
        schemas.EmailCodeRequest(email=email)


@pytest.mark.parametrize("local_id", ["", "   ", "has space", "x" * 65, "semi;colon"])
def test_invalid_local_ids_rejected(local_id):
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(local_id=local_id, password="pw1", nickname="n")


def test_nickname_length_limit():
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(local_id="alice", password="pw1", nickname="n" * 31)


def test_update_request_requires_a_field():
    with pytest.raises(ValidationError):
        schemas.UpdateAccountRequest()
    assert schemas.UpdateAccountRequest(nickname="Ally").password is None


def test_account_response_from_account():
    from laos.storage.models import Account, Provider

    account = Account(id=3, provider=Provider.GOOGLE, email="bob@x.com", nickname="Bob")
    response = schemas.AccountResponse.from_account(account)

    assert response.username == "bob@x.com"
    assert response.provider == "GOOGLE"
    assert response.role == "USER"
    assert response.local_id is None
