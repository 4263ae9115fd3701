"""
Shared authentication state for one application.

Holds the identity client, the session storage adapter, the token exchange
coordinator and the liveness cache. Built once at startup and handed to
both middlewares by reference, so each app (and each test) gets its own
dedup table and cache instead of module-level globals.
"""

import logging
from typing import Optional

import httpx

from .auth.identity import IdentityClient
from .auth.storage import MemorySessionStorage, SessionStorage
from .config import Settings
from .verify.liveness import AccessTokenLivenessCache
from .verify.token_exchange import TokenExchangeCoordinator

logger = logging.getLogger(__name__)


class ShopifyAuthContext:
    """Process-wide state owned by the middleware instances of one app."""

    def __init__(
        self,
        settings: Settings,
        storage: Optional[SessionStorage] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.storage = storage if storage is not None else MemorySessionStorage()
        self.identity = IdentityClient(settings, self.storage, http_client=http_client)
        self.coordinator = TokenExchangeCoordinator(
            self.identity,
            self.storage,
            timeout=settings.TOKEN_EXCHANGE_TIMEOUT_SECONDS,
            scopes=settings.scopes_list,
        )
        self.liveness = AccessTokenLivenessCache(
            self.identity,
            capacity=settings.LIVENESS_CACHE_CAPACITY,
            ttl_seconds=settings.LIVENESS_CACHE_TTL_SECONDS,
        )

    @property
    def scopes(self):
        return self.settings.scopes_list

    async def aclose(self) -> None:
        await self.identity.aclose()
        self.liveness.clear()
        logger.info("Closed authentication context")
