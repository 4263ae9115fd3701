"""
Verification Package
====================

Per-request session verification and silent session refresh.

Main Components:
----------------
- middleware.py: VerifyRequestMiddleware, the verification state machine
- token_exchange.py: TokenExchangeCoordinator (deduplicated, time-bounded token exchange)
- liveness.py: AccessTokenLivenessCache (confirms access tokens at most once per TTL)
"""

from .liveness import AccessTokenLivenessCache, TTLCache
from .token_exchange import (
    TokenExchangeCoordinator,
    exchange_session_token_for_access_token_session,
)

__all__ = [
    "AccessTokenLivenessCache",
    "TTLCache",
    "TokenExchangeCoordinator",
    "exchange_session_token_for_access_token_session",
]
