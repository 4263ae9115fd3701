"""
Identity provider client.

This module handles every interaction with the platform identity provider:
- Verifying App Bridge session tokens (HS256, signed with the app secret)
- Resolving the current session id from a request
- The OAuth authorization code handshake (begin / callback)
- Access token requests (OAuth code and token exchange grants)
- Lightweight authenticated Admin API reads

All failures are raised as IdentityError with an ErrorKind.
"""

import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode, urlparse

import httpx
import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from pydantic import ValidationError
from starlette.requests import Request

from ..config import Settings
from ..errors import ErrorKind, IdentityError
from ..models import AccessTokenResponse, SessionTokenPayload
from .session import Session, create_session, get_jwt_session_id, get_offline_session_id
from .storage import SessionStorage
from .utils import get_encoded_session_token, sanitize_shop, validate_shop

logger = logging.getLogger(__name__)


# Cookie carrying the signed id of a non-embedded app's session
SESSION_COOKIE_NAME = "shopify_app_session"

# Cookie carrying the signed OAuth state between begin_auth and the callback
STATE_COOKIE_NAME = "shopify_app_state"

SESSION_TOKEN_ALGORITHM = "HS256"


@dataclass(frozen=True)
class AuthBeginResult:
    """Authorization URL to redirect to, plus the signed state cookie to set."""
    url: str
    state_cookie: str


class IdentityClient:
    """
    Client for the Shopify identity provider and Admin API.

    One instance is shared per application; it owns a single
    httpx.AsyncClient unless one is injected.
    """

    def __init__(
        self,
        settings: Settings,
        storage: SessionStorage,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.storage = storage
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT_SECONDS)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # Session Tokens
    # =========================================================================

    def decode_session_token(self, encoded_token: str) -> SessionTokenPayload:
        """
        Verify and decode an App Bridge session token.

        Validates the signature with the app secret, the audience (app API
        key), expiry / not-before with leeway, and that the issuer and
        destination point at the same shop.

        Args:
            encoded_token: JWT from the Authorization header

        Returns:
            Decoded SessionTokenPayload

        Raises:
            IdentityError: INVALID_TOKEN for any validation failure
        """
        try:
            claims = jwt.decode(
                encoded_token,
                self.settings.SHOPIFY_API_SECRET,
                algorithms=[SESSION_TOKEN_ALGORITHM],
                audience=self.settings.SHOPIFY_API_KEY,
                leeway=self.settings.SESSION_TOKEN_LEEWAY_SECONDS,
                options={"require": ["exp", "iss", "dest", "aud"]},
            )
        except ExpiredSignatureError:
            raise IdentityError(ErrorKind.INVALID_TOKEN, "Session token has expired")
        except InvalidTokenError as e:
            raise IdentityError(ErrorKind.INVALID_TOKEN, f"Failed to parse session token: {e}")

        try:
            payload = SessionTokenPayload.model_validate(claims)
        except ValidationError as e:
            raise IdentityError(ErrorKind.INVALID_TOKEN, f"Malformed session token payload: {e}")

        issuer_host = urlparse(payload.iss).hostname
        dest_host = urlparse(payload.dest).hostname
        if not issuer_host or issuer_host != dest_host:
            raise IdentityError(
                ErrorKind.INVALID_TOKEN,
                "Session token had invalid issuer/destination combination",
            )

        return payload

    def decode_request_session_token(self, request: Request) -> Optional[SessionTokenPayload]:
        """
        Decode the bearer session token of a request, if it sent one.

        Returns:
            Decoded payload, or None when there is no Authorization header

        Raises:
            IdentityError: MISSING_TOKEN / INVALID_TOKEN
        """
        authorization = request.headers.get("authorization")
        if authorization is None:
            return None
        return self.decode_session_token(get_encoded_session_token(authorization))

    # =========================================================================
    # Current Session
    # =========================================================================

    def get_current_session_id(
        self,
        request: Request,
        is_online: bool,
        payload: Optional[SessionTokenPayload] = None,
    ) -> Optional[str]:
        """
        Resolve which stored session the request refers to.

        Embedded apps derive it from the session token; other apps from the
        signed session cookie.
        """
        if self.settings.IS_EMBEDDED_APP:
            if payload is None:
                payload = self.decode_request_session_token(request)
            if payload is None:
                return None
            if not is_online:
                return get_offline_session_id(payload.shop)
            if not payload.sub:
                return None
            return get_jwt_session_id(payload.shop, payload.sub)

        cookie = request.cookies.get(SESSION_COOKIE_NAME)
        if not cookie:
            return None
        try:
            claims = jwt.decode(
                cookie,
                self.settings.SHOPIFY_API_SECRET,
                algorithms=[SESSION_TOKEN_ALGORITHM],
            )
        except InvalidTokenError:
            logger.warning("Ignoring session cookie with invalid signature")
            return None
        return claims.get("sid")

    async def load_current_session(
        self,
        request: Request,
        is_online: bool,
        payload: Optional[SessionTokenPayload] = None,
    ) -> Optional[Session]:
        session_id = self.get_current_session_id(request, is_online, payload)
        if not session_id:
            return None
        return await self.storage.load_session(session_id)

    async def delete_current_session(
        self,
        request: Request,
        is_online: bool,
        payload: Optional[SessionTokenPayload] = None,
    ) -> None:
        """
        Delete the session the request refers to.

        Raises:
            IdentityError: SESSION_NOT_FOUND if there was nothing to delete
        """
        session_id = self.get_current_session_id(request, is_online, payload)
        if not session_id or not await self.storage.delete_session(session_id):
            raise IdentityError(ErrorKind.SESSION_NOT_FOUND, "No active session found")

    def sign_session_cookie(self, session: Session) -> str:
        return jwt.encode(
            {"sid": session.id},
            self.settings.SHOPIFY_API_SECRET,
            algorithm=SESSION_TOKEN_ALGORITHM,
        )

    # =========================================================================
    # OAuth Handshake
    # =========================================================================

    def begin_auth(self, shop: str, redirect_path: str, is_online: bool) -> AuthBeginResult:
        """
        Build the authorization URL for a shop.

        Args:
            shop: Shop domain (sanitized here)
            redirect_path: Callback path on this app, e.g. /auth/callback
            is_online: Request a per-user (online) access token

        Returns:
            AuthBeginResult with the authorize URL and a signed state cookie
        """
        shop = sanitize_shop(shop)
        state = secrets.token_urlsafe(16)

        params = {
            "client_id": self.settings.SHOPIFY_API_KEY,
            "scope": ",".join(self.settings.scopes_list),
            "redirect_uri": f"https://{self.settings.SHOPIFY_HOST_NAME}{redirect_path}",
            "state": state,
        }
        if is_online:
            params["grant_options[]"] = "per-user"

        expires = datetime.now(timezone.utc) + timedelta(seconds=self.settings.OAUTH_STATE_TTL_SECONDS)
        state_cookie = jwt.encode(
            {"state": state, "shop": shop, "online": is_online, "exp": expires},
            self.settings.SHOPIFY_API_SECRET,
            algorithm=SESSION_TOKEN_ALGORITHM,
        )

        logger.info(f"Beginning OAuth for {shop}", extra={"shop": shop, "online": is_online})
        return AuthBeginResult(
            url=f"https://{shop}/admin/oauth/authorize?{urlencode(params)}",
            state_cookie=state_cookie,
        )

    def validate_hmac(self, query: Mapping[str, str]) -> bool:
        """Check the HMAC the identity provider appends to callback queries."""
        provided = query.get("hmac")
        if not provided:
            return False

        message = "&".join(
            f"{key}={value}"
            for key, value in sorted(query.items())
            if key not in ("hmac", "signature")
        )
        digest = hmac.new(
            self.settings.SHOPIFY_API_SECRET.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(digest, provided)

    async def validate_auth_callback(
        self,
        query: Mapping[str, str],
        state_cookie: Optional[str],
    ) -> Session:
        """
        Complete the OAuth handshake and store the resulting session.

        Args:
            query: Callback query parameters (code, shop, state, hmac, ...)
            state_cookie: Value of the signed state cookie set by begin_auth

        Returns:
            The newly stored Session

        Raises:
            IdentityError: COOKIE_NOT_FOUND, SESSION_NOT_FOUND, INVALID_OAUTH,
                HTTP_FAILURE or SESSION_STORAGE
        """
        shop_param = query.get("shop", "")

        if not state_cookie:
            raise IdentityError(
                ErrorKind.COOKIE_NOT_FOUND,
                f"Cannot complete OAuth process. Could not find an OAuth cookie for shop url: {shop_param}",
            )

        try:
            oauth_state = jwt.decode(
                state_cookie,
                self.settings.SHOPIFY_API_SECRET,
                algorithms=[SESSION_TOKEN_ALGORITHM],
                options={"require": ["exp", "state", "shop"]},
            )
        except InvalidTokenError:
            raise IdentityError(
                ErrorKind.SESSION_NOT_FOUND,
                f"Cannot complete OAuth process. No session found for the specified shop url: {shop_param}",
            )

        if not self.validate_hmac(query):
            raise IdentityError(ErrorKind.INVALID_OAUTH, "Invalid OAuth callback: HMAC validation failed")

        if not validate_shop(shop_param) or shop_param.lower() != oauth_state["shop"]:
            raise IdentityError(ErrorKind.INVALID_OAUTH, "Invalid OAuth callback: shop mismatch")

        if query.get("state") != oauth_state["state"]:
            raise IdentityError(ErrorKind.INVALID_OAUTH, "Invalid OAuth callback: state mismatch")

        code = query.get("code")
        if not code:
            raise IdentityError(ErrorKind.INVALID_OAUTH, "Invalid OAuth callback: missing code")

        shop = oauth_state["shop"]
        response = await self.request_access_token(
            shop,
            {
                "client_id": self.settings.SHOPIFY_API_KEY,
                "client_secret": self.settings.SHOPIFY_API_SECRET,
                "code": code,
            },
        )

        session_id = None
        if response.is_online and not self.settings.IS_EMBEDDED_APP:
            session_id = str(uuid.uuid4())

        session = create_session(response, shop, state=oauth_state["state"], session_id=session_id)

        if not await self.storage.store_session(session):
            raise IdentityError(ErrorKind.SESSION_STORAGE, "OAuth session could not be saved")

        logger.info(
            f"OAuth completed for {shop}",
            extra={"shop": shop, "session_id": session.id, "online": session.is_online},
        )
        return session

    # =========================================================================
    # HTTP Calls
    # =========================================================================

    async def request_access_token(self, shop: str, body: Dict[str, Any]) -> AccessTokenResponse:
        """
        POST to the shop's access token endpoint.

        Raises:
            IdentityError: HTTP_FAILURE with status code and body on non-2xx,
                code None on transport errors; OTHER if a 2xx body is unreadable
        """
        response = await self._send(
            "POST",
            f"https://{shop}/admin/oauth/access_token",
            json=body,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            action="request access token",
        )

        try:
            return AccessTokenResponse.model_validate(response.json())
        except ValueError as e:
            raise IdentityError(
                ErrorKind.OTHER,
                f"Invalid access token response: {e}",
                code=response.status_code,
                body=response.text,
            )

    async def fetch_shop_info(self, session: Session) -> Dict[str, Any]:
        """Minimal authenticated read used to confirm an access token is still accepted."""
        response = await self._send(
            "GET",
            f"https://{session.shop}/admin/api/{self.settings.SHOPIFY_API_VERSION}/shop.json",
            headers={
                "X-Shopify-Access-Token": session.access_token or "",
                "Accept": "application/json",
            },
            action="fetch shop info",
        )
        try:
            return response.json()
        except ValueError:
            return {}

    async def _send(self, method: str, url: str, action: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to {action}: {type(e).__name__}", extra={"url": url})
            raise IdentityError(ErrorKind.HTTP_FAILURE, f"Failed to {action}: {e}") from e

        if not response.is_success:
            logger.warning(
                f"Failed to {action}: {response.status_code}",
                extra={"url": url, "status_code": response.status_code},
            )
            raise IdentityError(
                ErrorKind.HTTP_FAILURE,
                f"Failed to {action}: {response.status_code} {response.reason_phrase}",
                code=response.status_code,
                body=response.text,
            )

        return response


__all__ = [
    "IdentityClient",
    "AuthBeginResult",
    "SESSION_COOKIE_NAME",
    "STATE_COOKIE_NAME",
]
