"""
Data Models Module

This module defines Pydantic models for the payloads exchanged with the
identity provider and the responses returned by the middleware.

Models are organized by functional area:
- Identity provider models (access token responses, associated user info)
- Session token models (decoded JWT payload)
- Error models (structured 401 bodies)
"""

import base64
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AccessMode(str, Enum):
    """Session classification: per-user (online) or per-shop (offline)."""

    ONLINE = "online"
    OFFLINE = "offline"


# ============================================================================
# Identity Provider Models
# ============================================================================

class AssociatedUser(BaseModel):
    """Staff member an online access token was issued for."""
    model_config = ConfigDict(extra="allow")

    id: int = Field(..., description="User identifier")
    first_name: Optional[str] = Field(None, description="First name")
    last_name: Optional[str] = Field(None, description="Last name")
    email: Optional[str] = Field(None, description="Email address")
    email_verified: Optional[bool] = Field(None, description="Whether the email is verified")
    account_owner: Optional[bool] = Field(None, description="Whether the user owns the shop")
    locale: Optional[str] = Field(None, description="User locale")
    collaborator: Optional[bool] = Field(None, description="Whether the user is a collaborator")


class OnlineAccessInfo(BaseModel):
    """Online-only part of an access token response."""
    model_config = ConfigDict(extra="allow")

    expires_in: int = Field(..., description="Token lifetime in seconds")
    associated_user_scope: str = Field(default="", description="Scopes granted to the user")
    associated_user: AssociatedUser = Field(..., description="User the token belongs to")


class AccessTokenResponse(BaseModel):
    """Body of a successful /admin/oauth/access_token response (OAuth code or token exchange)."""
    model_config = ConfigDict(extra="allow")

    access_token: str = Field(..., description="Durable access token")
    scope: str = Field(default="", description="Comma-separated granted scopes")
    expires_in: Optional[int] = Field(None, description="Lifetime in seconds (online only)")
    associated_user_scope: Optional[str] = Field(None, description="Scopes granted to the user")
    associated_user: Optional[AssociatedUser] = Field(None, description="User info (online only)")

    @property
    def is_online(self) -> bool:
        return self.associated_user is not None


# ============================================================================
# Session Token Models
# ============================================================================

class SessionTokenPayload(BaseModel):
    """Decoded payload of an App Bridge session token."""
    model_config = ConfigDict(extra="allow")

    iss: str = Field(..., description="Shop admin URL, e.g. https://acme.myshopify.com/admin")
    dest: str = Field(..., description="Shop URL, e.g. https://acme.myshopify.com")
    aud: str = Field(..., description="App API key")
    sub: Optional[str] = Field(None, description="User identifier")
    exp: int = Field(..., description="Expiry (epoch seconds)")
    nbf: Optional[int] = Field(None, description="Not before (epoch seconds)")
    iat: Optional[int] = Field(None, description="Issued at (epoch seconds)")
    jti: Optional[str] = Field(None, description="Token identifier")
    sid: Optional[str] = Field(None, description="Admin session identifier")

    @property
    def shop(self) -> str:
        """Shop domain taken from the destination URL."""
        return self.dest.replace("https://", "")

    @property
    def host(self) -> str:
        """Base64-encoded host parameter derived from the issuer URL."""
        return base64.b64encode(self.iss.replace("https://", "").encode("utf-8")).decode("utf-8")


# ============================================================================
# Error Models
# ============================================================================

class AuthErrorResponse(BaseModel):
    """Structured body returned with 401 responses."""
    error: str = Field(..., description="Error code, e.g. 'missing_token'")
    detail: str = Field(..., description="Human-readable error message")


class ScopeSet(BaseModel):
    """Normalized set of access scopes, with implied read scopes for write scopes."""
    scopes: List[str] = Field(default_factory=list)

    @classmethod
    def parse(cls, value) -> "ScopeSet":
        if value is None:
            return cls()
        if isinstance(value, str):
            items = value.split(",")
        else:
            items = list(value)
        return cls(scopes=sorted({item.strip() for item in items if item and item.strip()}))

    def expanded(self) -> set:
        result = set(self.scopes)
        for scope in self.scopes:
            # write_x implies read_x (unauthenticated_write_x -> unauthenticated_read_x)
            if "write_" in scope:
                result.add(scope.replace("write_", "read_", 1))
        return result

    def covers(self, other: "ScopeSet") -> bool:
        return set(other.scopes).issubset(self.expanded())
