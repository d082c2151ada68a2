"""Tracking pixel bytes, response headers and embeddable pixel markup."""

import base64
import secrets
from html import escape
from typing import Dict, Optional
from urllib.parse import urlencode

# 1x1 transparent GIF
TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def pixel_headers() -> Dict[str, str]:
    headers = {"Content-Type": "image/gif", "Content-Length": str(len(TRACKING_PIXEL))}
    headers.update(NO_CACHE_HEADERS)
    return headers


def new_tracking_id() -> str:
    """128-bit random token, hex encoded."""
    return secrets.token_hex(16)


def build_tracking_url(base_url: str, tracking_id: str, recipient: Optional[str] = None) -> str:
    params = {"id": tracking_id}
    if recipient:
        params["email"] = recipient
    return f"{base_url.rstrip('/')}/api/track?{urlencode(params)}"


def build_tracking_html(tracking_url: str) -> str:
    """``<img>`` tag to append to an outgoing HTML body."""
    return (
        f'<img src="{escape(tracking_url, quote=True)}" width="1" height="1" alt="" '
        'style="display:none !important;" border="0">'
    )
