"""
Authentication Package

This package handles the interactive side of authentication with the
platform identity provider and the session primitives shared with the
verification layer.

Key responsibilities:
- OAuth begin / callback handling and the top-level iframe escape
- Session token verification and session id resolution
- Session value type and storage adapter interface

Modules:
- routes: ShopifyAuthMiddleware serving {auth_path}, /toplevel, /inline, /callback
- toplevel: App Bridge redirect page and the top-level marker cookie
- identity: IdentityClient (session tokens, OAuth, access token and Admin API calls)
- session: Session model and create_session
- storage: SessionStorage protocol and MemorySessionStorage
- utils: Shop validation, bearer extraction, reauthorization headers

The authentication flow:
1. Embedded app hits {auth_path}?shop=... inside the Admin iframe
2. The top-level redirect page sets a marker cookie and escapes the iframe
3. {auth_path} (marker present) redirects to the identity provider
4. The provider calls back {auth_path}/callback, the session is stored
5. Subsequent requests are checked by the verification middleware
"""

from .session import Session, create_session
from .storage import MemorySessionStorage, SessionStorage
from .utils import AuthFailureHeader

__all__ = [
    "Session",
    "create_session",
    "SessionStorage",
    "MemorySessionStorage",
    "AuthFailureHeader",
]
