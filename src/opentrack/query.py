"""Read side of the event log: histories, statistics and message trees."""

import logging
from typing import Any, Dict, List, Optional, Set

from .classifier import ForwardClassifier
from .database import Database
from .models import EmailSummary, OpenEvent, StatisticsRow, TrackingHistory

logger = logging.getLogger(__name__)


class TrackingQueryService:
    """Rebuild tracking views from the raw event log.

    Classification is recomputed on every read rather than trusted from the
    stored flag.
    """

    def __init__(self, database: Database, classifier: Optional[ForwardClassifier] = None):
        self.database = database
        self.classifier = classifier or ForwardClassifier()

    def get_events(self, tracking_id: str) -> List[OpenEvent]:
        """Flat event list, oldest first, classified against the anchor."""
        return self.classifier.reclassify(self.database.get_events(tracking_id))

    def get_history(self, tracking_id: str) -> Optional[TrackingHistory]:
        """Anchor open with every later event as a child; None if nothing was recorded."""
        events = self.get_events(tracking_id)
        if not events:
            return None
        return TrackingHistory(
            anchor=events[0],
            forwarded_children=events[1:],
            message=self.database.get_message(tracking_id),
        )

    def get_statistics(self) -> List[StatisticsRow]:
        return self.database.get_statistics()

    def list_messages(self) -> List[Dict[str, Any]]:
        return self.database.list_messages()

    def get_email_summary(self, email_id: str, max_depth: int = 1) -> Optional[EmailSummary]:
        """Message, its events, and the messages forwarded from it.

        ``max_depth=1`` expands direct children only; each child is returned
        with its own events and an empty forwarded list. Larger values walk
        further down. A message with no children, the depth limit, or a
        message already visited ends the walk.
        """
        message = self.database.get_message(email_id)
        if message is None:
            return None
        return self._summarize(message, max_depth, visited={email_id})

    def _summarize(self, message, depth: int, visited: Set[str]) -> EmailSummary:
        summary = EmailSummary(email=message, events=self.get_events(message.tracking_id))
        if depth <= 0:
            return summary

        for child in self.database.get_child_messages(message.tracking_id):
            if child.tracking_id in visited:
                logger.warning(
                    "Forward chain revisits %s from %s; not expanding",
                    child.tracking_id, message.tracking_id
                )
                continue
            visited.add(child.tracking_id)
            summary.forwarded_emails.append(self._summarize(child, depth - 1, visited))
        return summary
