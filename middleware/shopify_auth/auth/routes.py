"""
Interactive authorization flow (OAuth begin / callback).

This module implements the OAuth 2.0 authorization code flow with the
platform identity provider, including the top-level redirect embedded apps
need to escape the Admin iframe.

Paths (relative to the configured auth path, default /auth):
    {auth_path}            Start OAuth (or escape the iframe first)
    {auth_path}/toplevel   Escape the iframe, then come back to {auth_path}
    {auth_path}/inline     Legacy alias of /toplevel
    {auth_path}/callback   Identity provider callback
Everything else is passed to the next handler.
"""

import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Optional
from urllib.parse import urlencode

from fastapi import status
from fastapi.responses import PlainTextResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..errors import ErrorKind, IdentityError, validate_auth_path
from ..models import AccessMode
from .identity import SESSION_COOKIE_NAME, STATE_COOKIE_NAME
from .toplevel import (
    clear_top_level_oauth_cookie,
    create_top_level_oauth_redirect,
    has_top_level_oauth_cookie,
)
from .utils import is_chrome_user_agent, validate_shop

if TYPE_CHECKING:
    from ..context import ShopifyAuthContext

logger = logging.getLogger(__name__)

AfterAuth = Callable[[Request], Awaitable[Optional[Response]]]


class ShopifyAuthMiddleware(BaseHTTPMiddleware):
    """
    Serves the OAuth routes; all other requests pass through untouched.

    After a successful callback the new session is exposed as
    `request.state.shopify` and `after_auth(request)` is awaited. If the hook
    returns a response it is sent, otherwise the merchant is redirected to
    the app root with shop and host.
    """

    def __init__(
        self,
        app,
        context: "ShopifyAuthContext",
        access_mode: str = "online",
        auth_path: str = "/auth",
        after_auth: Optional[AfterAuth] = None,
    ):
        """
        Raises:
            InvalidAuthPathError: If auth_path does not start with '/' or ends with '/'
        """
        super().__init__(app)
        self.context = context
        self.access_mode = AccessMode(access_mode)
        self.after_auth = after_auth

        self.auth_path = validate_auth_path(auth_path)
        self.callback_path = f"{auth_path}/callback"
        self.top_level_paths = frozenset({f"{auth_path}/toplevel", f"{auth_path}/inline"})

        self.top_level_oauth_redirect = create_top_level_oauth_redirect(
            context.settings.SHOPIFY_API_KEY,
            self.auth_path,
        )

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path

        if path in self.top_level_paths:
            return self.top_level_oauth_redirect(request)

        if path == self.auth_path:
            if has_top_level_oauth_cookie(request):
                return self._begin_auth(request)
            return self.top_level_oauth_redirect(request)

        if path == self.callback_path:
            return await self._callback(request)

        return await call_next(request)

    # =========================================================================
    # Auth Start
    # =========================================================================

    def _begin_auth(self, request: Request) -> Response:
        shop = request.query_params.get("shop", "")

        if not validate_shop(shop):
            logger.warning("Rejected auth start with bad shop parameter", extra={"shop": shop})
            return PlainTextResponse(
                "Invalid shop parameter" if shop else "Missing shop parameter",
                status_code=status.HTTP_400_BAD_REQUEST,
            )

        result = self.context.identity.begin_auth(
            shop,
            self.callback_path,
            self.access_mode is AccessMode.ONLINE,
        )

        response = RedirectResponse(url=result.url, status_code=status.HTTP_302_FOUND)
        clear_top_level_oauth_cookie(response)
        self._set_cookie(
            response,
            request,
            STATE_COOKIE_NAME,
            result.state_cookie,
            max_age=self.context.settings.OAUTH_STATE_TTL_SECONDS,
        )
        return response

    # =========================================================================
    # Callback
    # =========================================================================

    async def _callback(self, request: Request) -> Response:
        query = dict(request.query_params)
        shop = query.get("shop", "")

        try:
            session = await self.context.identity.validate_auth_callback(
                query,
                request.cookies.get(STATE_COOKIE_NAME),
            )
        except IdentityError as err:
            if err.is_recoverable_callback_failure:
                # Likely the OAuth cookie expired before the merchant approved the request
                logger.warning(
                    f"Restarting OAuth: {err.message}",
                    extra={"kind": err.kind.value, "shop": shop},
                )
                return RedirectResponse(
                    f"{self.auth_path}?{urlencode({'shop': shop})}",
                    status_code=status.HTTP_302_FOUND,
                )
            if err.kind is ErrorKind.INVALID_OAUTH:
                logger.warning(err.message, extra={"shop": shop})
                return PlainTextResponse(err.message, status_code=status.HTTP_400_BAD_REQUEST)

            logger.error(
                f"OAuth callback failed: {err.message}",
                extra={"kind": err.kind.value, "code": err.code, "shop": shop},
            )
            return PlainTextResponse(err.message, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

        request.state.shopify = session

        response = None
        if self.after_auth is not None:
            response = await self.after_auth(request)
        if response is None:
            response = RedirectResponse(
                f"/?{urlencode({'shop': session.shop, 'host': query.get('host', '')})}",
                status_code=status.HTTP_302_FOUND,
            )

        response.delete_cookie(STATE_COOKIE_NAME)
        if not self.context.settings.IS_EMBEDDED_APP:
            self._set_cookie(
                response,
                request,
                SESSION_COOKIE_NAME,
                self.context.identity.sign_session_cookie(session),
                httponly=True,
            )
        return response

    @staticmethod
    def _set_cookie(response: Response, request: Request, key: str, value: str, **kwargs) -> None:
        if is_chrome_user_agent(request.headers.get("user-agent")):
            kwargs.update(secure=True, samesite="none")
        response.set_cookie(key, value, **kwargs)


__all__ = ["ShopifyAuthMiddleware"]
