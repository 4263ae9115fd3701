"""
Shared fixtures for the authentication middleware tests.

The identity provider is faked with httpx.MockTransport so the real
IdentityClient code path (request building, error mapping) is exercised.
"""

import asyncio
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from shopify_auth.auth.session import Session
from shopify_auth.auth.storage import MemorySessionStorage
from shopify_auth.config import Settings
from shopify_auth.main import create_application


API_KEY = "test-api-key"
API_SECRET = "test-api-secret-1234567890"
SHOP = "acme.myshopify.com"
USER_ID = "42"


def online_token_body(access_token: str = "exchanged-access-token", scope: str = "") -> Dict[str, Any]:
    """Access token response for an online (per-user) grant"""
    return {
        "access_token": access_token,
        "scope": scope,
        "expires_in": 86399,
        "associated_user_scope": scope,
        "associated_user": {
            "id": int(USER_ID),
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@example.com",
            "email_verified": True,
            "account_owner": True,
            "locale": "en",
            "collaborator": False,
        },
    }


class FakeIdentityProvider:
    """Records requests and answers the access token and shop endpoints"""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.token_status = 200
        self.token_body: Dict[str, Any] = online_token_body()
        self.shop_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.path == "/admin/oauth/access_token":
            return httpx.Response(self.token_status, json=self.token_body)

        if request.url.path.endswith("/shop.json"):
            return httpx.Response(self.shop_status, json={"shop": {"myshopify_domain": request.url.host}})

        return httpx.Response(404, json={"errors": "Not Found"})

    def calls(self, path_suffix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(path_suffix))

    @property
    def token_calls(self) -> int:
        return self.calls("/admin/oauth/access_token")

    @property
    def shop_calls(self) -> int:
        return self.calls("/shop.json")


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Settings for an embedded, online-mode app"""
    return Settings(
        SHOPIFY_API_KEY=API_KEY,
        SHOPIFY_API_SECRET=API_SECRET,
        SHOPIFY_SCOPES="",
        SHOPIFY_HOST_NAME="app.example.com",
        ACCESS_MODE="online",
    )


@pytest.fixture
def header_settings(settings):
    """Same app, signalling reauthorization with headers"""
    return settings.model_copy(update={"RETURN_HEADER": True})


@pytest.fixture
def provider():
    return FakeIdentityProvider()


@pytest.fixture
def http_client(provider):
    return httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))


@pytest.fixture
def storage():
    return MemorySessionStorage()


@pytest.fixture
def make_session_token():
    """Mint App Bridge session tokens signed with the test secret"""
    def _make(
        shop: str = SHOP,
        sub: str = USER_ID,
        exp_delta: int = 60,
        secret: str = API_SECRET,
        aud: str = API_KEY,
        iss: Optional[str] = None,
    ) -> str:
        now = int(time.time())
        payload = {
            "iss": iss or f"https://{shop}/admin",
            "dest": f"https://{shop}",
            "aud": aud,
            "sub": sub,
            "exp": now + exp_delta,
            "nbf": now - 5,
            "iat": now - 5,
            "jti": str(uuid.uuid4()),
            "sid": "admin-session-id",
        }
        return jwt.encode(payload, secret, algorithm="HS256")

    return _make


@pytest.fixture
def stored_session(storage):
    """Store a session and return it (storage is async, tests may be sync)"""
    def _store(session: Session) -> Session:
        asyncio.run(storage.store_session(session))
        return session

    return _store


@pytest.fixture
def make_client(storage, http_client):
    """Build a TestClient around a freshly created application"""
    def _make(app_settings: Settings, **kwargs) -> TestClient:
        app = create_application(
            settings=app_settings,
            storage=storage,
            http_client=http_client,
            **kwargs,
        )
        return TestClient(app, follow_redirects=False, raise_server_exceptions=False)

    return _make
