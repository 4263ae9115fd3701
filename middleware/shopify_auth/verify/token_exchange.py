"""
Token Exchange
==============

Turns a short-lived App Bridge session token into a durable access-token
session without sending the merchant through OAuth.

Concurrent requests from the same viewer usually carry the same session
token, so TokenExchangeCoordinator shares one in-flight exchange per
(shop, token type, token, save flag) and bounds it with a timeout.

https://shopify.dev/docs/apps/auth/get-access-tokens/token-exchange
"""

import asyncio
import functools
import json
import logging
from typing import Dict, Iterable, Optional, Union

from ..auth.session import Session, create_session
from ..auth.storage import SessionStorage
from ..auth.utils import sanitize_shop
from ..errors import ErrorKind, IdentityError
from ..models import AccessMode

logger = logging.getLogger(__name__)


TOKEN_EXCHANGE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:token-exchange"
ID_TOKEN_SUBJECT_TYPE = "urn:ietf:params:oauth:token-type:id_token"

DEFAULT_EXCHANGE_TIMEOUT_SECONDS = 10.0


def build_exchange_key(shop: str, encoded_session_token: str, token_type: str, save: bool) -> str:
    """Deduplication key; the save flag is part of it so saving and non-saving calls never share a result."""
    return json.dumps([shop, token_type, encoded_session_token, bool(save)])


def build_token_exchange_body(settings, encoded_session_token: str, token_type: str) -> dict:
    return {
        "client_id": settings.SHOPIFY_API_KEY,
        "client_secret": settings.SHOPIFY_API_SECRET,
        "grant_type": TOKEN_EXCHANGE_GRANT_TYPE,
        "subject_token": encoded_session_token,
        "subject_token_type": ID_TOKEN_SUBJECT_TYPE,
        "requested_token_type": f"urn:shopify:params:oauth:token-type:{token_type}-access-token",
    }


async def exchange_session_token_for_access_token_session(
    identity,
    shop: str,
    encoded_session_token: str,
    token_type: Union[str, AccessMode],
) -> Session:
    """
    Exchange a session token for an access-token session (single call, no dedup, no timeout).

    Args:
        identity: IdentityClient used for the HTTP call
        shop: Shop domain (sanitized here)
        encoded_session_token: JWT from the Authorization header
        token_type: 'online' or 'offline'

    Returns:
        Session built from the response

    Raises:
        IdentityError: INVALID_SHOP or HTTP_FAILURE
    """
    token_type = AccessMode(token_type).value
    shop = sanitize_shop(shop)

    body = build_token_exchange_body(identity.settings, encoded_session_token, token_type)
    response = await identity.request_access_token(shop, body)

    return create_session(response, shop)


class TokenExchangeCoordinator:
    """
    Deduplicating, time-bounded token exchange.

    At most one exchange per key runs at a time. The task is registered
    before anything is awaited and removed from the table once it settles,
    so later calls with the same key start a fresh exchange.
    """

    def __init__(
        self,
        identity,
        storage: SessionStorage,
        timeout: float = DEFAULT_EXCHANGE_TIMEOUT_SECONDS,
        scopes: Optional[Iterable[str]] = None,
    ):
        self.identity = identity
        self.storage = storage
        self.timeout = timeout
        self.scopes = list(scopes) if scopes else None
        self._pending: Dict[str, "asyncio.Task[Session]"] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def exchange(
        self,
        shop: str,
        encoded_session_token: str,
        token_type: Union[str, AccessMode] = AccessMode.ONLINE,
        save: bool = False,
    ) -> Session:
        """
        Return an active session for the session token, sharing in-flight work.

        Args:
            shop: Shop domain from the decoded session token
            encoded_session_token: JWT from the Authorization header
            token_type: 'online' or 'offline'
            save: Persist the session through the storage adapter before returning

        Returns:
            Active Session

        Raises:
            IdentityError: HTTP_FAILURE, EXCHANGE_TIMEOUT, INACTIVE_SESSION,
                INVALID_SHOP or SESSION_STORAGE
        """
        token_type = AccessMode(token_type).value
        key = build_exchange_key(shop, encoded_session_token, token_type, save)

        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(
                self._exchange(shop, encoded_session_token, token_type, save)
            )
            self._pending[key] = task
            task.add_done_callback(functools.partial(self._settle, key))
        else:
            logger.debug("Joining in-flight token exchange", extra={"shop": shop})

        # A cancelled waiter must not abort the exchange other waiters share
        return await asyncio.shield(task)

    def _settle(self, key: str, task: "asyncio.Task[Session]") -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            # Retrieved here so an exchange whose waiters all went away is not reported as unhandled
            task.exception()

    async def _exchange(self, shop: str, encoded_session_token: str, token_type: str, save: bool) -> Session:
        try:
            # wait_for cancels the underlying request on timeout
            session = await asyncio.wait_for(
                exchange_session_token_for_access_token_session(
                    self.identity, shop, encoded_session_token, token_type
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Token exchange timed out after {self.timeout}s",
                extra={"shop": shop, "token_type": token_type},
            )
            raise IdentityError(
                ErrorKind.EXCHANGE_TIMEOUT,
                f"Token exchange request timed out after {self.timeout} seconds",
            )

        if not session.is_active(self.scopes):
            raise IdentityError(
                ErrorKind.INACTIVE_SESSION,
                "Token exchange returned an inactive session",
            )

        if save and not await self.storage.store_session(session):
            raise IdentityError(ErrorKind.SESSION_STORAGE, "Exchanged session could not be saved")

        logger.info(
            f"Exchanged session token for {token_type} access token",
            extra={"shop": session.shop, "session_id": session.id},
        )
        return session


__all__ = [
    "TokenExchangeCoordinator",
    "exchange_session_token_for_access_token_session",
    "build_exchange_key",
    "build_token_exchange_body",
]
