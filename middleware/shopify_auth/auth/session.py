"""
Session Model Module
====================

Defines the Session value handed around by the middleware and the helpers
used to derive session identifiers and build sessions from access token
responses.

Sessions are frozen: an update is always a full replacement through the
session storage adapter.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Union

from ..models import AccessTokenResponse, OnlineAccessInfo, ScopeSet

logger = logging.getLogger(__name__)


# =============================================================================
# Session Identifiers
# =============================================================================

def get_offline_session_id(shop: str) -> str:
    """Session id for the long-lived, per-shop session."""
    return f"offline_{shop}"


def get_jwt_session_id(shop: str, user_id: Union[str, int]) -> str:
    """Session id for a per-user session resolved from an embedded session token."""
    return f"{shop}_{user_id}"


# =============================================================================
# Session
# =============================================================================

@dataclass(frozen=True)
class Session:
    """
    Authenticated shop session.

    Attributes:
        id: Storage key (see get_offline_session_id / get_jwt_session_id)
        shop: Shop domain, e.g. acme.myshopify.com
        state: OAuth state the session was created with ('' for token exchange)
        is_online: True for per-user sessions
        access_token: Durable access token (secret, never logged)
        scope: Comma-separated granted scopes
        expires: Expiry instant (online sessions only, aware UTC)
        online_access_info: Associated user block (online sessions only)
    """

    id: str
    shop: str
    state: str = ""
    is_online: bool = False
    access_token: Optional[str] = field(default=None, repr=False)
    scope: Optional[str] = None
    expires: Optional[datetime] = None
    online_access_info: Optional[OnlineAccessInfo] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Expiry is exclusive: a session expiring exactly now is expired."""
        if self.expires is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires <= now

    def is_active(
        self,
        scopes: Optional[Union[str, Iterable[str]]] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Whether the session can be used without re-authorizing.

        Args:
            scopes: Scopes the app requires; skipped when empty
            now: Reference instant (defaults to the current time)

        Returns:
            True if there is an access token, the session has not expired,
            and the granted scopes cover the required ones.
        """
        if not self.access_token:
            return False
        if self.is_expired(now):
            return False

        required = ScopeSet.parse(scopes)
        if required.scopes and not ScopeSet.parse(self.scope).covers(required):
            logger.debug(
                "Session scopes do not cover required scopes",
                extra={"shop": self.shop, "session_id": self.id},
            )
            return False

        return True

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for adapters that persist plain data."""
        return {
            "id": self.id,
            "shop": self.shop,
            "state": self.state,
            "is_online": self.is_online,
            "access_token": self.access_token,
            "scope": self.scope,
            "expires": self.expires.isoformat() if self.expires else None,
            "online_access_info": (
                self.online_access_info.model_dump() if self.online_access_info else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        expires = data.get("expires")
        if isinstance(expires, str):
            expires = datetime.fromisoformat(expires)
        info = data.get("online_access_info")
        if isinstance(info, dict):
            info = OnlineAccessInfo.model_validate(info)
        return cls(
            id=data["id"],
            shop=data["shop"],
            state=data.get("state", ""),
            is_online=bool(data.get("is_online", False)),
            access_token=data.get("access_token"),
            scope=data.get("scope"),
            expires=expires,
            online_access_info=info,
        )


# =============================================================================
# Session Creation
# =============================================================================

def create_session(
    response: Union[AccessTokenResponse, Dict[str, Any]],
    shop: str,
    state: str = "",
    session_id: Optional[str] = None,
) -> Session:
    """
    Create a new session from an access token response.

    If the response carries an associated user the session is online, gets a
    per-user id and expires `expires_in` seconds from now.

    Args:
        response: Parsed or raw body of the access token response
        shop: Shop domain the token was issued for
        state: OAuth state (empty for token exchange)
        session_id: Explicit id, e.g. a random id for non-embedded online sessions

    Returns:
        New Session instance
    """
    if not isinstance(response, AccessTokenResponse):
        response = AccessTokenResponse.model_validate(response)

    if not response.is_online:
        return Session(
            id=session_id or get_offline_session_id(shop),
            shop=shop,
            state=state,
            is_online=False,
            access_token=response.access_token,
            scope=response.scope,
        )

    expires_in = response.expires_in or 0
    online_info = OnlineAccessInfo(
        expires_in=expires_in,
        associated_user_scope=response.associated_user_scope or "",
        associated_user=response.associated_user,
    )

    return Session(
        id=session_id or get_jwt_session_id(shop, response.associated_user.id),
        shop=shop,
        state=state,
        is_online=True,
        access_token=response.access_token,
        scope=response.scope,
        expires=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        online_access_info=online_info,
    )


__all__ = [
    "Session",
    "create_session",
    "get_offline_session_id",
    "get_jwt_session_id",
]
