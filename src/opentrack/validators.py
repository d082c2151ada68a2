"""Input validation for the tracking API."""

import re
from typing import Optional, Tuple
from urllib.parse import urlsplit

from email_validator import EmailNotValidError, validate_email

from .exceptions import ValidationError

_TRACKING_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_email_address(email: str) -> Tuple[bool, str]:
    """Validate an email address.

    Args:
        email: Email address to validate

    Returns:
        Tuple of (is_valid, normalized address or error message)
    """
    try:
        valid = validate_email(email, check_deliverability=False)
        return True, valid.normalized
    except EmailNotValidError as e:
        return False, str(e)


def require_recipient(recipient: Optional[str]) -> str:
    if not recipient or not isinstance(recipient, str):
        raise ValidationError("Recipient email is required")
    is_valid, result = validate_email_address(recipient)
    if not is_valid:
        raise ValidationError(f"Invalid recipient email: {result}")
    return result


def require_tracking_id(tracking_id, field: str = "trackingId") -> str:
    if not isinstance(tracking_id, str) or not _TRACKING_ID_RE.match(tracking_id):
        raise ValidationError(f"{field} must be 1-64 letters, digits, '-' or '_'")
    return tracking_id


def require_redirect_url(url: Optional[str]) -> str:
    if not url:
        raise ValidationError("url parameter is required")
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValidationError("url must be an absolute http(s) URL")
    return url
