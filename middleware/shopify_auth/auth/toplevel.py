"""
Top-level OAuth redirect.

The identity provider refuses to render its authorization page inside a
third-party iframe, so an embedded app first bounces the browser out of the
Admin iframe. This module renders the App Bridge page that does that and
manages the marker cookie telling the auth route the escape already happened.
"""

import json
from string import Template
from typing import Optional
from urllib.parse import urlencode

from fastapi.responses import HTMLResponse
from starlette.requests import Request
from starlette.responses import Response

from .utils import is_chrome_user_agent

# If this is set, the auth route knows to begin OAuth instead of escaping the iframe
TOP_LEVEL_OAUTH_COOKIE_NAME = "shopifyTopLevelOAuth"

TOP_LEVEL_OAUTH_COOKIE_MAX_AGE = 60


# The page is served verbatim; only the JSON-encoded values below are substituted.
TOP_LEVEL_REDIRECT_TEMPLATE = Template("""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <script src="https://unpkg.com/@shopify/app-bridge@3"></script>
    <script type="text/javascript">
      document.addEventListener('DOMContentLoaded', function() {
        var redirectUrl = $redirect_url;
        if (window.top === window.self) {
          window.location.href = redirectUrl;
        } else {
          var AppBridge = window['app-bridge'];
          var createApp = AppBridge.default;
          var Redirect = AppBridge.actions.Redirect;
          var app = createApp({
            apiKey: $api_key,
            host: $host,
            shopOrigin: $shop_origin,
          });
          var redirect = Redirect.create(app);
          redirect.dispatch(Redirect.Action.REMOTE, redirectUrl);
        }
      });
    </script>
</head>
<body></body>
</html>
""")


def _js_string(value: str) -> str:
    """Encode a value as a JS string literal that cannot close the script tag."""
    return json.dumps(value).replace("</", "<\\/")


def get_top_level_redirect_script(
    shop: str,
    redirect_to: str,
    api_key: str,
    host: Optional[str] = None,
) -> str:
    """Render the App Bridge redirect page."""
    return TOP_LEVEL_REDIRECT_TEMPLATE.substitute(
        redirect_url=_js_string(redirect_to),
        api_key=_js_string(api_key),
        host=_js_string(host or ""),
        shop_origin=_js_string(shop),
    )


# =============================================================================
# Marker Cookie
# =============================================================================

def has_top_level_oauth_cookie(request: Request) -> bool:
    return bool(request.cookies.get(TOP_LEVEL_OAUTH_COOKIE_NAME))


def set_top_level_oauth_cookie(response: Response, request: Request) -> None:
    """Set the marker; Chrome-family browsers need Secure + SameSite=None inside iframes."""
    if is_chrome_user_agent(request.headers.get("user-agent")):
        response.set_cookie(
            TOP_LEVEL_OAUTH_COOKIE_NAME,
            "1",
            max_age=TOP_LEVEL_OAUTH_COOKIE_MAX_AGE,
            secure=True,
            samesite="none",
        )
    else:
        response.set_cookie(
            TOP_LEVEL_OAUTH_COOKIE_NAME,
            "1",
            max_age=TOP_LEVEL_OAUTH_COOKIE_MAX_AGE,
        )


def clear_top_level_oauth_cookie(response: Response) -> None:
    response.delete_cookie(TOP_LEVEL_OAUTH_COOKIE_NAME)


# =============================================================================
# Redirect Response
# =============================================================================

def create_top_level_oauth_redirect(api_key: str, path: str):
    """
    Build the handler that escapes the iframe towards `path`.

    Args:
        api_key: App API key for App Bridge
        path: Route the top window navigates to (the auth start route)

    Returns:
        Callable taking a request and returning the redirect page response
    """
    def top_level_oauth_redirect(request: Request) -> Response:
        shop = request.query_params.get("shop", "")
        host = request.query_params.get("host")
        # Rebuild the query instead of forwarding it, so only the shop survives
        query_string = urlencode({"shop": shop})
        redirect_to = f"https://{request.url.netloc}{path}?{query_string}"

        response = HTMLResponse(
            content=get_top_level_redirect_script(shop, redirect_to, api_key, host),
            status_code=200,
        )
        set_top_level_oauth_cookie(response, request)
        return response

    return top_level_oauth_redirect


__all__ = [
    "TOP_LEVEL_OAUTH_COOKIE_NAME",
    "create_top_level_oauth_redirect",
    "get_top_level_redirect_script",
    "has_top_level_oauth_cookie",
    "set_top_level_oauth_cookie",
    "clear_top_level_oauth_cookie",
]
