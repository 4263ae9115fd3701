"""
Request Verification Tests

Tests the verification procedure end to end through a FastAPI app:
active sessions, liveness checks, token exchange, shop mismatches,
reauthorization signalling and session token errors.
"""

import base64
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock
from urllib.parse import urlencode

import pytest

from shopify_auth.auth.identity import SESSION_COOKIE_NAME
from shopify_auth.auth.session import Session
from shopify_auth.auth.utils import AuthFailureHeader
from shopify_auth.context import ShopifyAuthContext
from shopify_auth.errors import InvalidAuthPathError
from shopify_auth.verify.middleware import VerifyRequestMiddleware

from conftest import SHOP, USER_ID


ONLINE_SESSION_ID = f"{SHOP}_{USER_ID}"


def make_online_session(expires_delta: timedelta = timedelta(hours=1), **kwargs) -> Session:
    values = {
        "id": ONLINE_SESSION_ID,
        "shop": SHOP,
        "is_online": True,
        "access_token": "stored-access-token",
        "scope": "",
        "expires": datetime.now(timezone.utc) + expires_delta,
    }
    values.update(kwargs)
    return Session(**values)


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def expected_host() -> str:
    return base64.b64encode(f"{SHOP}/admin".encode()).decode()


# ============================================================================
# Active Sessions
# ============================================================================

class TestActiveSession:
    """Requests with a stored, active session"""

    def test_verified_session_reaches_handler(self, settings, make_client, stored_session, make_session_token, provider):
        stored_session(make_online_session())
        client = make_client(settings)

        response = client.get("/api/shop", headers=bearer(make_session_token()))

        assert response.status_code == 200
        assert response.json()["shop"] == SHOP
        assert provider.shop_calls == 1
        assert provider.token_calls == 0

    def test_liveness_is_checked_once_per_token(self, settings, make_client, stored_session, make_session_token, provider):
        stored_session(make_online_session())
        client = make_client(settings)

        for _ in range(3):
            response = client.get("/api/shop", headers=bearer(make_session_token()))
            assert response.status_code == 200

        assert provider.shop_calls == 1

    def test_liveness_request_sends_stored_access_token(self, settings, make_client, stored_session, make_session_token, provider):
        stored_session(make_online_session())
        client = make_client(settings)

        client.get("/api/shop", headers=bearer(make_session_token()))

        shop_request = [r for r in provider.requests if r.url.path.endswith("/shop.json")][0]
        assert shop_request.headers["X-Shopify-Access-Token"] == "stored-access-token"
        assert shop_request.url.host == SHOP

    def test_verified_response_clears_top_level_marker(self, settings, make_client, stored_session, make_session_token):
        stored_session(make_online_session())
        client = make_client(settings)

        response = client.get("/api/shop", headers=bearer(make_session_token()))

        assert "shopifyTopLevelOAuth" in response.headers.get("set-cookie", "")

    def test_offline_mode_uses_shop_session(self, settings, make_client, stored_session, make_session_token):
        offline_settings = settings.model_copy(update={"ACCESS_MODE": "offline"})
        stored_session(Session(id=f"offline_{SHOP}", shop=SHOP, access_token="offline-token", scope=""))
        client = make_client(offline_settings)

        response = client.get("/api/shop", headers=bearer(make_session_token()))

        assert response.status_code == 200
        assert response.json()["online"] is False

    def test_non_embedded_app_reads_session_cookie(self, settings, make_client, stored_session):
        cookie_settings = settings.model_copy(update={"IS_EMBEDDED_APP": False})
        session = stored_session(make_online_session(id="random-session-id"))
        client = make_client(cookie_settings)
        identity = client.app.state.shopify_auth.identity
        client.cookies.set(SESSION_COOKIE_NAME, identity.sign_session_cookie(session))

        response = client.get("/api/shop")

        assert response.status_code == 200
        assert response.json()["shop"] == SHOP


# ============================================================================
# Liveness Failures
# ============================================================================

class TestLivenessFailure:
    """Stored session whose access token is no longer accepted"""

    def test_revoked_token_falls_through_to_exchange(self, settings, make_client, stored_session, make_session_token, provider, storage):
        stored_session(make_online_session())
        provider.shop_status = 401
        client = make_client(settings)

        response = client.get("/api/shop", headers=bearer(make_session_token()))

        assert response.status_code == 200
        assert provider.shop_calls == 1
        assert provider.token_calls == 1
        assert storage._sessions[ONLINE_SESSION_ID].access_token == "exchanged-access-token"
        # The rejected token was never remembered as valid
        assert len(client.app.state.shopify_auth.liveness) == 0

    def test_forbidden_is_treated_like_unauthorized(self, settings, make_client, stored_session, make_session_token, provider):
        stored_session(make_online_session())
        provider.shop_status = 403
        client = make_client(settings)

        response = client.get("/api/shop", headers=bearer(make_session_token()))

        assert response.status_code == 200
        assert provider.token_calls == 1

    def test_other_liveness_failures_are_fatal(self, settings, make_client, stored_session, make_session_token, provider):
        stored_session(make_online_session())
        provider.shop_status = 502
        client = make_client(settings)

        response = client.get("/api/shop", headers=bearer(make_session_token()))

        assert response.status_code == 500
        assert response.json()["error"] == "internal_server_error"
        assert provider.token_calls == 0


# ============================================================================
# Token Exchange
# ============================================================================

class TestTokenExchange:
    """No usable session, but the request carries a valid session token"""

    def test_missing_session_is_created_by_exchange(self, settings, make_client, make_session_token, provider, storage):
        client = make_client(settings)

        response = client.get("/api/shop", headers=bearer(make_session_token()))

        assert response.status_code == 200
        assert provider.token_calls == 1
        assert ONLINE_SESSION_ID in storage
        assert storage._sessions[ONLINE_SESSION_ID].is_online is True

    def test_exchange_request_body(self, settings, make_client, make_session_token, provider):
        client = make_client(settings)
        token = make_session_token()

        client.get("/api/shop", headers=bearer(token))

        exchange_request = provider.requests[0]
        assert exchange_request.method == "POST"
        assert exchange_request.url.host == SHOP
        body = exchange_request.read().decode()
        assert token in body
        assert "urn:ietf:params:oauth:grant-type:token-exchange" in body
        assert "urn:shopify:params:oauth:token-type:online-access-token" in body

    def test_expired_session_is_refreshed(self, settings, make_client, stored_session, make_session_token, provider):
        stored_session(make_online_session(expires_delta=timedelta(minutes=-1)))
        client = make_client(settings)

        response = client.get("/api/shop", headers=bearer(make_session_token()))

        assert response.status_code == 200
        # Expired sessions skip the liveness check
        assert provider.shop_calls == 0
        assert provider.token_calls == 1

    def test_after_session_refresh_hook_is_awaited(self, settings, make_client, make_session_token):
        hook = AsyncMock(return_value=None)
        client = make_client(settings, after_session_refresh=hook)

        response = client.get("/api/shop", headers=bearer(make_session_token()))

        assert response.status_code == 200
        hook.assert_awaited_once()
        refreshed = hook.await_args[0][1]
        assert refreshed.shop == SHOP
        assert refreshed.access_token == "exchanged-access-token"

    def test_header_mode_exchange_success_sets_no_reauth_headers(self, header_settings, make_client, make_session_token):
        client = make_client(header_settings)

        response = client.get("/api/shop", headers=bearer(make_session_token()))

        assert response.status_code == 200
        for header in AuthFailureHeader:
            assert header.value not in response.headers
        assert 'shopifyTopLevelOAuth=""' in response.headers.get("set-cookie", "")

    def test_failed_exchange_redirects_to_auth(self, settings, make_client, make_session_token, provider):
        provider.token_status = 400
        client = make_client(settings)

        response = client.get(f"/api/shop?shop={SHOP}", headers=bearer(make_session_token()))

        assert response.status_code == 302
        assert response.headers["location"] == f"/auth?shop={SHOP}"

    def test_failed_exchange_signals_reauth_with_token_shop_and_host(self, header_settings, make_client, make_session_token, provider):
        provider.token_status = 500
        client = make_client(header_settings)

        response = client.get("/api/shop", headers=bearer(make_session_token()))

        assert response.status_code == 401
        assert response.headers[AuthFailureHeader.REAUTHORIZE.value] == "1"
        assert response.headers[AuthFailureHeader.REAUTHORIZE_URL.value] == (
            "/auth?" + urlencode({"shop": SHOP, "host": expected_host()})
        )
        assert response.json()["error"] == "reauthorize"


# ============================================================================
# Shop Mismatch
# ============================================================================

class TestShopMismatch:
    """?shop= disagrees with the loaded session"""

    def test_mismatch_deletes_session_and_redirects(self, settings, make_client, stored_session, make_session_token, provider, storage):
        stored_session(make_online_session())
        client = make_client(settings)

        response = client.get("/api/shop?shop=other.myshopify.com", headers=bearer(make_session_token()))

        assert response.status_code == 302
        assert response.headers["location"] == "/auth?shop=other.myshopify.com"
        assert ONLINE_SESSION_ID not in storage
        assert provider.requests == []

    def test_mismatch_redirects_even_in_header_mode(self, header_settings, make_client, stored_session, make_session_token):
        stored_session(make_online_session())
        client = make_client(header_settings)

        response = client.get("/api/shop?shop=other.myshopify.com", headers=bearer(make_session_token()))

        assert response.status_code == 302

    def test_matching_shop_is_not_a_mismatch(self, settings, make_client, stored_session, make_session_token):
        stored_session(make_online_session())
        client = make_client(settings)

        response = client.get(f"/api/shop?shop={SHOP}", headers=bearer(make_session_token()))

        assert response.status_code == 200


# ============================================================================
# Reauthorization Without A Session Token
# ============================================================================

class TestReauthorization:
    """No session and nothing to exchange"""

    def test_redirect_mode_redirects_with_request_query(self, settings, make_client, provider):
        client = make_client(settings)

        response = client.get(f"/api/shop?shop={SHOP}&host=abc")

        assert response.status_code == 302
        assert response.headers["location"] == f"/auth?shop={SHOP}&host=abc"
        assert provider.requests == []

    def test_non_embedded_app_without_session_redirects(self, settings, make_client):
        client = make_client(settings.model_copy(update={"IS_EMBEDDED_APP": False}))

        response = client.get(f"/api/shop?shop={SHOP}&host=abc&embedded=0")

        assert response.status_code == 302
        assert response.headers["location"] == f"/auth?shop={SHOP}&host=abc&embedded=0"

    def test_header_mode_returns_401_with_reauth_headers(self, header_settings, make_client):
        client = make_client(header_settings)

        response = client.get(f"/api/shop?shop={SHOP}")

        assert response.status_code == 401
        assert response.headers[AuthFailureHeader.REAUTHORIZE.value] == "1"
        assert response.headers[AuthFailureHeader.REAUTHORIZE_URL.value] == f"/auth?shop={SHOP}"
        assert AuthFailureHeader.INVALID_SESSION_TOKEN.value not in response.headers

    def test_header_mode_prefers_referer_query(self, header_settings, make_client):
        client = make_client(header_settings)

        response = client.get(
            "/api/shop",
            headers={"Referer": f"https://app.example.com/?shop={SHOP}&host=xyz"},
        )

        assert response.headers[AuthFailureHeader.REAUTHORIZE_URL.value] == f"/auth?shop={SHOP}&host=xyz"

    def test_health_is_not_verified(self, settings, make_client, provider):
        client = make_client(settings)

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert provider.requests == []

    def test_preflight_requests_pass_through(self, settings, make_client):
        client = make_client(settings)

        response = client.options("/api/shop")

        assert response.status_code != 401
        assert response.status_code != 302


# ============================================================================
# Session Token Errors
# ============================================================================

class TestSessionTokenErrors:
    """Bad bearer tokens produce a structured 401"""

    def test_malformed_authorization_header(self, settings, make_client):
        client = make_client(settings)

        response = client.get("/api/shop", headers={"Authorization": "Basic abc"})

        assert response.status_code == 401
        assert response.json() == {"error": "missing_token", "detail": "Missing session token"}
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_token_signed_with_wrong_secret(self, settings, make_client, make_session_token, provider):
        client = make_client(settings)

        response = client.get("/api/shop", headers=bearer(make_session_token(secret="not-the-secret")))

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_token"
        assert response.json()["detail"].startswith("Invalid session token")
        assert AuthFailureHeader.INVALID_SESSION_TOKEN.value not in response.headers
        assert provider.requests == []

    def test_expired_token(self, settings, make_client, make_session_token):
        client = make_client(settings)

        response = client.get("/api/shop", headers=bearer(make_session_token(exp_delta=-600)))

        assert response.status_code == 401
        assert "expired" in response.json()["detail"]

    def test_header_mode_flags_invalid_session_token(self, header_settings, make_client, make_session_token):
        client = make_client(header_settings)

        response = client.get("/api/shop", headers=bearer(make_session_token(aud="someone-else")))

        assert response.status_code == 401
        assert response.headers[AuthFailureHeader.INVALID_SESSION_TOKEN.value] == "1"
        assert response.headers[AuthFailureHeader.REAUTHORIZE.value] == "1"


# ============================================================================
# Construction
# ============================================================================

class TestMiddlewareConstruction:

    @pytest.mark.parametrize("route", ["auth", "/auth/", ""])
    def test_invalid_auth_route_is_rejected(self, settings, route):
        with pytest.raises(InvalidAuthPathError):
            VerifyRequestMiddleware(Mock(), context=ShopifyAuthContext(settings), auth_route=route)

    def test_unknown_access_mode_is_rejected(self, settings):
        with pytest.raises(ValueError):
            VerifyRequestMiddleware(Mock(), context=ShopifyAuthContext(settings), access_mode="sometimes")
