"""
Session verification and token exchange middleware for embedded Shopify apps.

Usage:
------
    from shopify_auth import ShopifyAuthContext, ShopifyAuthMiddleware, VerifyRequestMiddleware

    context = ShopifyAuthContext(settings)
    app.add_middleware(VerifyRequestMiddleware, context=context)
    app.add_middleware(ShopifyAuthMiddleware, context=context, after_auth=after_auth)
"""

from .auth.routes import ShopifyAuthMiddleware
from .auth.session import Session, create_session
from .auth.storage import MemorySessionStorage, SessionStorage
from .auth.utils import AuthFailureHeader
from .context import ShopifyAuthContext
from .errors import ErrorKind, IdentityError, InvalidAuthPathError
from .verify.middleware import VerificationState, VerifyRequestMiddleware
from .verify.token_exchange import (
    TokenExchangeCoordinator,
    exchange_session_token_for_access_token_session,
)

__all__ = [
    "ShopifyAuthMiddleware",
    "VerifyRequestMiddleware",
    "VerificationState",
    "ShopifyAuthContext",
    "Session",
    "create_session",
    "SessionStorage",
    "MemorySessionStorage",
    "AuthFailureHeader",
    "TokenExchangeCoordinator",
    "exchange_session_token_for_access_token_session",
    "ErrorKind",
    "IdentityError",
    "InvalidAuthPathError",
]
