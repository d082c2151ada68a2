"""Data models for open tracking."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class EventKind(str, Enum):
    """Kind of observed request."""

    OPEN = "open"
    FORWARD_OPEN = "forward_open"
    CLICK = "click"


@dataclass(frozen=True)
class Location:
    """Resolved geolocation of a client IP."""

    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "country": self.country,
            "region": self.region,
            "city": self.city,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


@dataclass(frozen=True)
class DeviceInfo:
    """Best-effort browser, OS and device class parsed from a user-agent."""

    browser: str = "Unknown"
    os: str = "Unknown"
    device: str = "Desktop"

    def to_dict(self) -> Dict[str, Any]:
        return {"browser": self.browser, "os": self.os, "device": self.device}


@dataclass(frozen=True)
class Signals:
    """Identity, forwarding and device signals taken from a pixel request."""

    tracking_id: Optional[str] = None
    claimed_original_recipient: Optional[str] = None
    forwarded_by_claim: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    device_info: Optional[DeviceInfo] = None


@dataclass
class OpenEvent:
    """One observed pixel fetch or link click."""

    tracking_id: str
    observed_at: Optional[datetime] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    location: Optional[Location] = None
    device_info: Optional[DeviceInfo] = None
    event_kind: EventKind = EventKind.OPEN
    classified_forwarded: bool = False
    claimed_recipient: Optional[str] = None
    forwarded_by: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_signals(
        cls,
        signals: Signals,
        location: Optional[Location] = None,
        event_kind: EventKind = EventKind.OPEN,
    ) -> "OpenEvent":
        return cls(
            tracking_id=signals.tracking_id,
            ip=signals.ip,
            user_agent=signals.user_agent,
            referrer=signals.referrer,
            location=location,
            device_info=signals.device_info,
            event_kind=event_kind,
            claimed_recipient=signals.claimed_original_recipient,
            forwarded_by=signals.forwarded_by_claim,
        )

    def with_classification(self, is_forward: bool) -> "OpenEvent":
        """Copy of this event carrying a read-time classification."""
        return replace(self, classified_forwarded=is_forward)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tracking_id": self.tracking_id,
            "observed_at": _iso(self.observed_at),
            "ip": self.ip,
            "user_agent": self.user_agent,
            "referrer": self.referrer,
            "location": self.location.to_dict() if self.location else None,
            "device_info": self.device_info.to_dict() if self.device_info else None,
            "event_kind": self.event_kind.value,
            "classified_forwarded": self.classified_forwarded,
            "claimed_recipient": self.claimed_recipient,
            "forwarded_by": self.forwarded_by,
        }


@dataclass
class TrackedMessage:
    """One outbound email carrying a tracking pixel."""

    tracking_id: str
    original_recipient: str
    subject: str = ""
    sent_at: Optional[datetime] = None
    parent_tracking_id: Optional[str] = None
    ever_opened: bool = False
    ever_forwarded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tracking_id": self.tracking_id,
            "original_recipient": self.original_recipient,
            "subject": self.subject,
            "sent_at": _iso(self.sent_at),
            "parent_tracking_id": self.parent_tracking_id,
            "ever_opened": self.ever_opened,
            "ever_forwarded": self.ever_forwarded,
        }


@dataclass(frozen=True)
class Classification:
    """Outcome of forward classification for one event."""

    is_forward: bool
    attributed_sender: Optional[str] = None
    rollup_forwarded: bool = False


@dataclass
class TrackingHistory:
    """Anchor open with every later event nested as a child."""

    anchor: OpenEvent
    forwarded_children: List[OpenEvent] = field(default_factory=list)
    message: Optional[TrackedMessage] = None

    @property
    def events(self) -> List[OpenEvent]:
        return [self.anchor] + self.forwarded_children

    def to_dict(self) -> Dict[str, Any]:
        data = self.anchor.to_dict()
        data["forwarded_children"] = [child.to_dict() for child in self.forwarded_children]
        return data


@dataclass(frozen=True)
class StatisticsRow:
    """Aggregate activity for one tracking identifier."""

    tracking_id: str
    open_count: int
    first_open: Optional[datetime]
    last_open: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tracking_id": self.tracking_id,
            "open_count": self.open_count,
            "first_open": _iso(self.first_open),
            "last_open": _iso(self.last_open),
        }


@dataclass
class EmailSummary:
    """A message, its events, and the messages forwarded from it."""

    email: TrackedMessage
    events: List[OpenEvent] = field(default_factory=list)
    forwarded_emails: List["EmailSummary"] = field(default_factory=list)

    @property
    def open_count(self) -> int:
        return sum(1 for event in self.events if event.event_kind != EventKind.CLICK)

    @property
    def forward_count(self) -> int:
        return len(self.forwarded_emails)

    @property
    def forwarded_email_events(self) -> Dict[str, List[OpenEvent]]:
        return {child.email.tracking_id: child.events for child in self.forwarded_emails}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email.to_dict(),
            "events": [event.to_dict() for event in self.events],
            "open_count": self.open_count,
            "forward_count": self.forward_count,
            "forwarded_emails": [child.to_dict() for child in self.forwarded_emails],
            "forwarded_email_events": {
                tracking_id: [event.to_dict() for event in events]
                for tracking_id, events in self.forwarded_email_events.items()
            },
        }
