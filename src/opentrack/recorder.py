"""Recording of open, forward and click events."""

import logging
from typing import Optional

from .classifier import ForwardClassifier
from .database import Database
from .exceptions import handle_exceptions
from .geo import GeoResolver
from .models import Classification, EventKind, Location, OpenEvent, Signals

logger = logging.getLogger(__name__)


class OpenEventRecorder:
    """Append events to the log and keep message rollup flags current.

    Nothing here raises to the caller: a failed write is logged and the
    event is dropped.
    """

    def __init__(
        self,
        database: Database,
        geo: Optional[GeoResolver] = None,
        classifier: Optional[ForwardClassifier] = None,
    ):
        self.database = database
        self.geo = geo
        self.classifier = classifier or ForwardClassifier()

    @handle_exceptions(logger=logger, reraise=False)
    def record(
        self,
        tracking_id: str,
        signals: Signals,
        location: Optional[Location] = None,
        event_kind: EventKind = EventKind.OPEN,
        classified_forwarded: bool = False,
    ) -> Optional[int]:
        """Append one event and return its id, or None if it was not stored."""
        event = OpenEvent.from_signals(signals, location=location, event_kind=event_kind)
        event.tracking_id = tracking_id
        event.classified_forwarded = classified_forwarded
        return self.database.insert_event(event)

    def locate(self, ip: Optional[str]) -> Optional[Location]:
        if self.geo is None:
            return None
        try:
            return self.geo.resolve(ip)
        except Exception as e:
            logger.warning("Location lookup failed for %s: %s", ip, e)
            return None

    @handle_exceptions(logger=logger, reraise=False)
    def capture(self, signals: Signals, event_kind: EventKind = EventKind.OPEN) -> Optional[int]:
        """Locate, classify, record and roll up one request's signals."""
        tracking_id = signals.tracking_id
        if not tracking_id:
            return None

        location = self.locate(signals.ip)
        candidate = OpenEvent.from_signals(signals, location=location, event_kind=event_kind)

        # History read and append must not interleave with another capture.
        with self.database.locked():
            history = self.database.get_events(tracking_id)
            classification = self.classifier.classify(
                history, candidate, signals.forwarded_by_claim
            )

            kind = event_kind
            if kind == EventKind.OPEN and classification.is_forward:
                kind = EventKind.FORWARD_OPEN

            event_id = self.record(
                tracking_id,
                signals,
                location=location,
                event_kind=kind,
                classified_forwarded=classification.is_forward,
            )
            if event_id is None:
                return None

            self._roll_up(tracking_id, kind, classification)

        self._log_capture(signals, kind, classification, location)
        return event_id

    def _roll_up(self, tracking_id: str, kind: EventKind, classification: Classification) -> None:
        # Clicks never touch the rollups; both updates are no-ops once set.
        if kind == EventKind.CLICK:
            return
        self.database.mark_opened(tracking_id)
        if classification.is_forward:
            self.database.mark_forwarded(tracking_id)

    def _log_capture(
        self,
        signals: Signals,
        kind: EventKind,
        classification: Classification,
        location: Optional[Location],
    ) -> None:
        original = signals.claimed_original_recipient or 'unknown'
        if kind == EventKind.CLICK:
            logger.info("Email %s link clicked (forwarded=%s)", signals.tracking_id, classification.is_forward)
        elif classification.is_forward:
            logger.info(
                "Forwarded email %s opened by %s (original: %s)",
                signals.tracking_id,
                classification.attributed_sender or 'unknown forwarded recipient',
                original,
            )
            if classification.rollup_forwarded:
                logger.info("Email %s forwarded for the first time", signals.tracking_id)
        else:
            logger.info("Email %s opened by original recipient %s", signals.tracking_id, original)
        if location:
            logger.info("Location: %s, %s, %s", location.city, location.region, location.country)
