"""Forward classification of open events.

An open is compared with the anchor, the first event ever recorded for the
tracking identifier. A forwarding claim from the request is trusted as-is;
without one, a change of IP address or user-agent relative to the anchor is
taken as a sign that someone else opened the message.

This is a heuristic. Recipients behind a shared NAT or using a shared device
look identical to the original recipient (false negatives), and a recipient
whose IP changes between opens looks like a new reader (false positives).
There is no time-based rule: the same IP and user-agent is a repeat open no
matter how long after the anchor it arrives.
"""

from typing import Optional, Sequence

from .models import Classification, OpenEvent


def _differs(anchor_value: Optional[str], value: Optional[str]) -> bool:
    # A missing value on either side gives no evidence of drift.
    if not anchor_value or not value:
        return False
    return anchor_value != value


def has_drift(anchor: OpenEvent, event: OpenEvent) -> bool:
    """True when ``event`` came from a different IP or user-agent than ``anchor``."""
    return _differs(anchor.ip, event.ip) or _differs(anchor.user_agent, event.user_agent)


class ForwardClassifier:
    """Pure classifier; holds no state and performs no I/O."""

    def classify(
        self,
        history: Sequence[OpenEvent],
        new_event: OpenEvent,
        claimed_forwarder: Optional[str] = None,
    ) -> Classification:
        if not history:
            return Classification(is_forward=False)

        anchor = history[0]
        if claimed_forwarder:
            is_forward, sender = True, claimed_forwarder
        else:
            is_forward, sender = has_drift(anchor, new_event), None

        already_forwarded = any(event.classified_forwarded for event in history)
        return Classification(
            is_forward=is_forward,
            attributed_sender=sender,
            rollup_forwarded=is_forward and not already_forwarded,
        )

    def reclassify(self, events: Sequence[OpenEvent]) -> list:
        """Classify every event against the anchor, at read time.

        The anchor is never a forward. Later events apply the same rules as
        ``classify`` using the claim stored with each event, so a change to
        the rules re-labels stored history.
        """
        if not events:
            return []
        anchor = events[0]
        result = [anchor.with_classification(False)]
        for event in events[1:]:
            is_forward = bool(event.forwarded_by) or has_drift(anchor, event)
            result.append(event.with_classification(is_forward))
        return result
