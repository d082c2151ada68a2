"""Identity, forwarding and device signals derived from a pixel request."""

from typing import Optional
from urllib.parse import parse_qs, urlsplit

from .geo import first_ip
from .models import DeviceInfo, Signals

FORWARDED_HEADER = "X-Forwarded-Email"
IDENTITY_COOKIE = "emailIdentifier"
FORWARD_QUERY_PARAMS = ("forwarded", "forwardedBy")
TRACKING_ID_PARAMS = ("id", "trackingId")


def parse_device(user_agent: Optional[str]) -> DeviceInfo:
    """Classify browser, OS and device class from a user-agent string.

    This is plain substring matching, not a full parser. Edge and Internet
    Explorer are tested first because their user-agents also carry the
    Chrome/Safari tokens; iOS and Android likewise embed "Mac OS X" and
    "Linux".
    """
    if not user_agent:
        return DeviceInfo()

    if "Edg/" in user_agent or "Edge/" in user_agent:
        browser = "Edge"
    elif "MSIE" in user_agent or "Trident/" in user_agent:
        browser = "Internet Explorer"
    elif "Firefox/" in user_agent:
        browser = "Firefox"
    elif "Chrome/" in user_agent:
        browser = "Chrome"
    elif "Safari/" in user_agent:
        browser = "Safari"
    else:
        browser = "Unknown"

    if "Windows" in user_agent:
        os_name = "Windows"
    elif "iPhone" in user_agent or "iPad" in user_agent or "iPod" in user_agent:
        os_name = "iOS"
    elif "Android" in user_agent:
        os_name = "Android"
    elif "Mac OS X" in user_agent or "Macintosh" in user_agent:
        os_name = "MacOS"
    elif "Linux" in user_agent:
        os_name = "Linux"
    else:
        os_name = "Unknown"

    if os_name in ("Android", "iOS"):
        device = "Tablet" if "iPad" in user_agent else "Mobile"
    else:
        device = "Desktop"

    return DeviceInfo(browser=browser, os=os_name, device=device)


def _first_non_empty(values) -> Optional[str]:
    for value in values:
        if value and value.strip():
            return value.strip()
    return None


def _referrer_claim(referrer: Optional[str]) -> Optional[str]:
    if not referrer:
        return None
    try:
        query = urlsplit(referrer).query
    except ValueError:
        return None
    return _first_non_empty(parse_qs(query).get("forwardedBy", []))


class ClientSignalExtractor:
    """Derive :class:`Signals` from a Flask/werkzeug request."""

    def forwarded_by_claim(self, request) -> Optional[str]:
        """Who claims to have forwarded the message; first non-empty source wins.

        Query parameter, then the forwarding header, then ``forwardedBy``
        inside the referrer URL, then the identity cookie.
        """
        claim = _first_non_empty(request.args.get(name) for name in FORWARD_QUERY_PARAMS)
        if claim:
            return claim

        claim = _first_non_empty([request.headers.get(FORWARDED_HEADER)])
        if claim:
            return claim

        claim = _referrer_claim(request.headers.get("Referer"))
        if claim:
            return claim

        return _first_non_empty([request.cookies.get(IDENTITY_COOKIE)])

    def client_ip(self, request) -> Optional[str]:
        forwarded_for = first_ip(request.headers.get("X-Forwarded-For"))
        return forwarded_for or request.remote_addr

    def extract(self, request) -> Signals:
        user_agent = request.headers.get("User-Agent")
        return Signals(
            tracking_id=_first_non_empty(request.args.get(name) for name in TRACKING_ID_PARAMS),
            claimed_original_recipient=_first_non_empty([request.args.get("email")]),
            forwarded_by_claim=self.forwarded_by_claim(request),
            referrer=request.headers.get("Referer"),
            user_agent=user_agent,
            ip=self.client_ip(request),
            device_info=parse_device(user_agent),
        )
