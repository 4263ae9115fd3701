"""
Authentication utilities for shop domains, bearer tokens and reauthorization headers.

This module handles:
- Validating and normalizing shop domains
- Extracting the session token from the Authorization header
- Deriving shop/host query strings from decoded session tokens
- Classifying upstream failures that mean "re-authorize"
"""

import re
from enum import Enum
from typing import Optional
from urllib.parse import urlencode, urlparse

from ..errors import ErrorKind, IdentityError
from ..models import SessionTokenPayload


# =============================================================================
# Reauthorization Headers
# =============================================================================

class AuthFailureHeader(str, Enum):
    """Response headers telling an API client to re-drive the auth flow."""

    REAUTHORIZE = "X-Shopify-API-Request-Failure-Reauthorize"
    REAUTHORIZE_URL = "X-Shopify-API-Request-Failure-Reauthorize-Url"
    INVALID_SESSION_TOKEN = "X-Shopify-API-Request-Failure-Invalid-Session-Token"


# =============================================================================
# Shop Domains
# =============================================================================

SHOP_DOMAIN_PATTERN = re.compile(
    r"^[a-zA-Z0-9][a-zA-Z0-9\-]*\.myshopify\.(com|io)/*$"
)


def validate_shop(shop: Optional[str]) -> bool:
    """
    Check that a shop parameter looks like a myshopify.com domain.

    Args:
        shop: Raw shop parameter from the query string

    Returns:
        True if shop is a well-formed shop domain
    """
    if not shop:
        return False
    return bool(SHOP_DOMAIN_PATTERN.match(shop))


def sanitize_shop(shop: Optional[str]) -> str:
    """
    Normalize a shop domain (scheme and trailing slashes removed, lowercased).

    Raises:
        IdentityError: INVALID_SHOP if the result is not a valid shop domain
    """
    value = (shop or "").strip()
    for prefix in ("https://", "http://"):
        if value.lower().startswith(prefix):
            value = value[len(prefix):]
    value = value.rstrip("/").lower()

    if not validate_shop(value):
        raise IdentityError(ErrorKind.INVALID_SHOP, f"Received invalid shop argument: {shop!r}")
    return value


# =============================================================================
# Session Token Helpers
# =============================================================================

def get_encoded_session_token(authorization: Optional[str]) -> str:
    """
    Extract the bearer session token from an Authorization header value.

    Args:
        authorization: Authorization header value (must not be None)

    Returns:
        Encoded JWT string

    Raises:
        IdentityError: MISSING_TOKEN if the header is not 'Bearer <token>'
    """
    parts = (authorization or "").split()

    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise IdentityError(
            ErrorKind.MISSING_TOKEN,
            "Missing Bearer token in authorization header",
        )

    return parts[1]


def get_shop_and_host_query_string(payload: SessionTokenPayload) -> str:
    """Build 'shop=...&host=...' from a decoded session token."""
    return urlencode({"shop": payload.shop, "host": payload.host})


def get_query_string_from_referer(referer: Optional[str]) -> str:
    """Return the query string of the referer URL, or '' if there is none."""
    if not referer:
        return ""
    return urlparse(referer).query


def build_auth_url(auth_route: str, query_string: Optional[str]) -> str:
    """Append a query string to the auth route (always with '?', as the redirect contract expects)."""
    return f"{auth_route}?{query_string or ''}"


# =============================================================================
# Error Classification
# =============================================================================

def raise_unless_auth_error(err: BaseException) -> None:
    """
    Re-raise the error unless it is an upstream 401/403 response.

    Authentication failures are swallowed so the caller can re-authorize;
    anything else is fatal.
    """
    if isinstance(err, IdentityError) and err.is_auth_failure:
        return
    raise err


# =============================================================================
# Browser Detection
# =============================================================================

CHROME_USER_AGENT_PATTERN = re.compile(r"chrome|crios", re.IGNORECASE)


def is_chrome_user_agent(user_agent: Optional[str]) -> bool:
    return bool(user_agent and CHROME_USER_AGENT_PATTERN.search(user_agent))
