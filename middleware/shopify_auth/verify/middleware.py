"""
Request Verification Middleware
===============================

Decides, for every request that is not part of the OAuth flow, whether the
caller already has a usable session, whether one can be obtained silently
through token exchange, or whether the caller must re-authorize.

Steps (strictly in this order):
    1. Load the session for the configured access mode
    2. Shop mismatch between ?shop= and the session -> delete it, redirect to auth
    3. Active session -> confirm the access token is still accepted, proceed
    4. Otherwise exchange the bearer session token for a new session, proceed
    5. Otherwise re-authorize: 401 + headers, or a redirect to the auth route
    6. Missing / invalid bearer tokens -> structured 401

Usage:
------
    app.add_middleware(VerifyRequestMiddleware, context=context, return_header=True)
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable, Optional
from urllib.parse import urlencode

from fastapi import status
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..auth.session import Session
from ..auth.toplevel import clear_top_level_oauth_cookie
from ..auth.utils import (
    AuthFailureHeader,
    build_auth_url,
    get_encoded_session_token,
    get_query_string_from_referer,
    get_shop_and_host_query_string,
    raise_unless_auth_error,
)
from ..errors import ErrorKind, IdentityError, validate_auth_path
from ..models import AccessMode, AuthErrorResponse, SessionTokenPayload

if TYPE_CHECKING:
    from ..context import ShopifyAuthContext

logger = logging.getLogger(__name__)

AfterSessionRefresh = Callable[[Request, Session], Awaitable[None]]


class VerificationState(str, Enum):
    """Where a request stands in the verification procedure."""

    NO_SESSION = "no_session"
    SESSION_SHOP_MISMATCH = "session_shop_mismatch"
    SESSION_ACTIVE_UNVERIFIED = "session_active_unverified"
    SESSION_ACTIVE_VERIFIED = "session_active_verified"
    SESSION_EXPIRED_OR_INVALID = "session_expired_or_invalid"
    REAUTH_REQUIRED = "reauth_required"


class VerifyRequestMiddleware(BaseHTTPMiddleware):
    """
    Ensures downstream handlers only run for callers with a verified session.

    The verified session is exposed as `request.state.shopify`.
    """

    def __init__(
        self,
        app,
        context: "ShopifyAuthContext",
        access_mode: str = "online",
        return_header: bool = False,
        auth_route: str = "/auth",
        after_session_refresh: Optional[AfterSessionRefresh] = None,
        exempt_paths: Iterable[str] = ("/health",),
    ):
        """
        Args:
            app: Next ASGI app
            context: Shared authentication state
            access_mode: 'online' or 'offline'
            return_header: Signal reauthorization with 401 + headers instead of redirecting
            auth_route: Route of the interactive authorization flow
            after_session_refresh: Awaited after token exchange produced a new session
            exempt_paths: Paths passed through without verification

        Raises:
            InvalidAuthPathError: If auth_route is malformed
            ValueError: If access_mode is unknown
        """
        super().__init__(app)
        self.context = context
        self.access_mode = AccessMode(access_mode)
        self.return_header = return_header
        self.auth_route = validate_auth_path(auth_route)
        self.after_session_refresh = after_session_refresh
        self.exempt_paths = frozenset(exempt_paths)

    @property
    def is_online(self) -> bool:
        return self.access_mode is AccessMode.ONLINE

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method == "OPTIONS" or request.url.path in self.exempt_paths:
            return await call_next(request)

        try:
            return await self._verify(request, call_next)
        except IdentityError as err:
            if err.is_token_error:
                return self._token_error_response(request, err)
            raise

    # =========================================================================
    # State Machine
    # =========================================================================

    async def _verify(self, request: Request, call_next) -> Response:
        identity = self.context.identity

        # 1. Load the session (validates the session token signature for embedded apps)
        encoded_token: Optional[str] = None
        payload: Optional[SessionTokenPayload] = None
        authorization = request.headers.get("authorization")
        if self.context.settings.IS_EMBEDDED_APP and authorization is not None:
            encoded_token = get_encoded_session_token(authorization)
            payload = identity.decode_session_token(encoded_token)

        session = await identity.load_current_session(request, self.is_online, payload)
        state = VerificationState.NO_SESSION if session is None else VerificationState.SESSION_ACTIVE_UNVERIFIED

        # 2. Login again if the shops don't match
        shop = request.query_params.get("shop", "")
        if session is not None and shop and session.shop != shop:
            state = VerificationState.SESSION_SHOP_MISMATCH
            logger.warning(
                "Session shop does not match request shop, re-authorizing",
                extra={"state": state.value, "session_shop": session.shop, "shop": shop},
            )
            await self._clear_session(request, payload)
            return RedirectResponse(
                build_auth_url(self.auth_route, request.url.query),
                status_code=status.HTTP_302_FOUND,
            )

        # 3. Active session: confirm the access token is still accepted
        if session is not None and session.is_active(self.context.scopes):
            try:
                await self.context.liveness.verify(session)
            except IdentityError as err:
                raise_unless_auth_error(err)
                state = VerificationState.SESSION_EXPIRED_OR_INVALID
                self.context.liveness.invalidate(session)
                logger.warning(
                    f"Access token rejected by identity provider ({err.code})",
                    extra={"state": state.value, "shop": session.shop},
                )
            else:
                state = VerificationState.SESSION_ACTIVE_VERIFIED
                return await self._proceed(request, call_next, session, state)
        elif session is not None:
            state = VerificationState.SESSION_EXPIRED_OR_INVALID

        # 4. No usable session: try exchanging the session token
        if encoded_token is not None and payload is not None:
            try:
                session = await self.context.coordinator.exchange(
                    payload.shop,
                    encoded_token,
                    self.access_mode,
                    save=True,
                )
            except IdentityError as err:
                logger.warning(
                    f"Token exchange failed: {err.message}",
                    extra={"kind": err.kind.value, "code": err.code, "shop": payload.shop},
                )
            else:
                if self.after_session_refresh is not None:
                    await self.after_session_refresh(request, session)
                state = VerificationState.SESSION_ACTIVE_VERIFIED
                return await self._proceed(request, call_next, session, state)

        # 5. Re-authorize
        state = VerificationState.REAUTH_REQUIRED
        logger.info(
            "Re-authorization required",
            extra={"state": state.value, "path": request.url.path, "return_header": self.return_header},
        )
        return self._reauth_response(request, payload, session)

    async def _proceed(
        self,
        request: Request,
        call_next,
        session: Session,
        state: VerificationState,
    ) -> Response:
        request.state.shopify = session
        logger.debug(
            "Request verified",
            extra={"state": state.value, "shop": session.shop, "session_id": session.id},
        )
        response = await call_next(request)
        clear_top_level_oauth_cookie(response)
        return response

    async def _clear_session(self, request: Request, payload: Optional[SessionTokenPayload]) -> None:
        try:
            await self.context.identity.delete_current_session(request, self.is_online, payload)
        except IdentityError as err:
            # We can just move on if no sessions were cleared
            if err.kind is not ErrorKind.SESSION_NOT_FOUND:
                raise

    # =========================================================================
    # Responses
    # =========================================================================

    def _reauth_query(
        self,
        request: Request,
        payload: Optional[SessionTokenPayload],
        session: Optional[Session],
    ) -> str:
        """Shop/host for the reauth URL: session token, then referer, then session, then the request."""
        if payload is not None:
            return get_shop_and_host_query_string(payload)

        referer_query = get_query_string_from_referer(request.headers.get("referer"))
        if referer_query:
            return referer_query

        if session is not None:
            return urlencode({"shop": session.shop})

        return request.url.query

    def _reauth_response(
        self,
        request: Request,
        payload: Optional[SessionTokenPayload],
        session: Optional[Session],
    ) -> Response:
        if not self.return_header:
            return RedirectResponse(
                build_auth_url(self.auth_route, request.url.query),
                status_code=status.HTTP_302_FOUND,
            )

        reauth_url = build_auth_url(self.auth_route, self._reauth_query(request, payload, session))
        body = AuthErrorResponse(error="reauthorize", detail="Session is missing or expired")
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content=body.model_dump(),
            headers={
                AuthFailureHeader.REAUTHORIZE.value: "1",
                AuthFailureHeader.REAUTHORIZE_URL.value: reauth_url,
            },
        )

    def _token_error_response(self, request: Request, err: IdentityError) -> Response:
        if err.kind is ErrorKind.MISSING_TOKEN:
            detail = "Missing session token"
        else:
            detail = f"Invalid session token: {err.message}"

        logger.warning(detail, extra={"kind": err.kind.value, "path": request.url.path})

        headers = {"WWW-Authenticate": "Bearer"}
        if self.return_header:
            headers[AuthFailureHeader.REAUTHORIZE.value] = "1"
            headers[AuthFailureHeader.REAUTHORIZE_URL.value] = build_auth_url(
                self.auth_route, self._reauth_query(request, None, None)
            )
            headers[AuthFailureHeader.INVALID_SESSION_TOKEN.value] = "1"

        body = AuthErrorResponse(error=err.kind.value, detail=detail)
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content=body.model_dump(),
            headers=headers,
        )


__all__ = ["VerifyRequestMiddleware", "VerificationState"]
