"""
Shared fixtures for the authorization server test suite.

- fake_clock: a controllable clock so expiry boundaries can be hit exactly
- config / auth_manager: the core, built from environment like production
- client: a FastAPI TestClient around create_app() that does not follow redirects
"""

import base64
import hashlib
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from auth import AuthManager
from config import Config
from main import create_app
from models import AuthorizationRequest, ClientRegistrationRequest

RESOURCE = "https://mcp.example.com/mcp"
REDIRECT_URI = "https://cb/x"

ENV_VARS = [
    "HOST", "PORT", "ENVIRONMENT", "PUBLIC_URL", "OAUTH_ISSUER_URL", "OAUTH_RESOURCE_NAME",
    "OAUTH_DOCS_URL", "OAUTH_SCOPES", "OAUTH_CODE_TTL", "OAUTH_ACCESS_TOKEN_TTL",
    "OAUTH_REFRESH_TOKEN_TTL", "OAUTH_STRICT_RESOURCE", "OAUTH_STATIC_CLIENT_ID",
    "OAUTH_STATIC_CLIENT_SECRET", "OAUTH_STATIC_CLIENT_REDIRECT_URIS", "CLEANUP_INTERVAL",
    "ALLOWED_ORIGINS", "LOG_LEVEL",
]


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def code_from_redirect(location: str) -> str:
    return parse_qs(urlparse(location).query)["code"][0]


@pytest.fixture
def env(monkeypatch):
    """Isolate Config from the host environment"""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("PUBLIC_URL", RESOURCE)
    monkeypatch.setenv("CLEANUP_INTERVAL", "0")
    return monkeypatch


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def config(env):
    return Config()


@pytest.fixture
def auth_manager(config, fake_clock):
    return AuthManager(config, clock=fake_clock)


@pytest.fixture
def client(config, auth_manager):
    return TestClient(create_app(config, auth_manager), follow_redirects=False)


@pytest.fixture
def register(auth_manager):
    """Factory registering a client directly against the core"""

    async def _register(redirect_uris=None, **metadata):
        request = ClientRegistrationRequest(redirect_uris=redirect_uris or [REDIRECT_URI], **metadata)
        return await auth_manager.register_client(request)

    return _register


@pytest.fixture
def authorize(auth_manager):
    """Factory running the authorization endpoint logic and returning the minted code"""

    async def _authorize(oauth_client, verifier="abc", method="S256", **overrides):
        params = {
            "client_id": oauth_client.client_id,
            "redirect_uri": REDIRECT_URI,
            "response_type": "code",
            "code_challenge": s256(verifier) if method == "S256" else verifier,
            "code_challenge_method": method,
        }
        params.update(overrides)
        location = await auth_manager.create_authorization(AuthorizationRequest(**params))
        return code_from_redirect(location)

    return _authorize
