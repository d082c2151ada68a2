import logging
from dataclasses import replace
from functools import partial
from typing import Optional

from flask import Flask, jsonify, redirect, request

from .background import RecordingQueue
from .classifier import ForwardClassifier
from .config import Settings
from .database import Database
from .exceptions import NotFoundError, OpenTrackError, ValidationError, format_exception_chain
from .geo import GeoResolver
from .models import EventKind
from .pixel import TRACKING_PIXEL, build_tracking_html, build_tracking_url, new_tracking_id, pixel_headers
from .query import TrackingQueryService
from .recorder import OpenEventRecorder
from .signals import ClientSignalExtractor
from .validators import require_recipient, require_redirect_url, require_tracking_id

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    geo: Optional[GeoResolver] = None,
) -> Flask:
    """Factory function to create and configure Flask app."""
    settings = settings or Settings()
    app = Flask(__name__)
    app.config['DB_PATH'] = settings.database.path

    if database is None:
        database = Database(settings.database.path, timeout=settings.database.timeout)
    database.open()

    if geo is None and settings.geo.enabled:
        geo = GeoResolver(settings.geo.database_path)

    classifier = ForwardClassifier()
    recording_queue = RecordingQueue(
        maxsize=settings.recording.queue_size,
        synchronous=settings.recording.synchronous,
    )
    recording_queue.start()

    # Inject collaborators into the app
    app.settings = settings
    app.db = database
    app.geo = geo
    app.extractor = ClientSignalExtractor()
    app.recorder = OpenEventRecorder(database, geo=geo, classifier=classifier)
    app.queries = TrackingQueryService(database, classifier=classifier)
    app.recording_queue = recording_queue

    def shutdown():
        """Drain pending recordings, then release the store and GeoIP reader."""
        recording_queue.stop()
        if geo is not None:
            geo.close()
        database.close()

    app.shutdown = shutdown

    def _capture(event_kind: EventKind, tracking_id: Optional[str] = None):
        """Hand the current request's signals to the recording worker."""
        if not settings.recording.enabled:
            return
        try:
            signals = app.extractor.extract(request)
            if tracking_id:
                signals = replace(signals, tracking_id=tracking_id)
            if not signals.tracking_id:
                return
            try:
                require_tracking_id(signals.tracking_id)
            except ValidationError:
                logger.debug("Ignoring %s with malformed tracking id", event_kind.value)
                return
            app.recording_queue.submit(partial(app.recorder.capture, signals, event_kind))
        except Exception:
            logger.exception("Failed to queue %s capture", event_kind.value)

    def _base_url() -> str:
        return settings.server.base_url or request.host_url

    @app.errorhandler(OpenTrackError)
    def handle_opentrack_error(error: OpenTrackError):
        if error.status_code >= 500:
            logger.error("Request failed:\n%s", format_exception_chain(error), exc_info=error.cause)
        return jsonify(error.to_dict()), error.status_code

    @app.route('/health', methods=['GET'])
    def health():
        """Health check endpoint."""
        return jsonify({"status": "healthy"}), 200

    @app.route('/api/track', methods=['GET'])
    def track_open():
        """Tracking pixel endpoint; always returns the pixel."""
        _capture(EventKind.OPEN)
        return TRACKING_PIXEL, 200, pixel_headers()

    @app.route('/pixel/<tracking_id>.png', methods=['GET'])
    def track_open_by_path(tracking_id):
        """Pixel addressed by path; serves the same GIF as /api/track."""
        _capture(EventKind.OPEN, tracking_id)
        return TRACKING_PIXEL, 200, pixel_headers()

    @app.route('/api/click', methods=['GET'])
    def track_click():
        """Click tracking redirect endpoint."""
        url = require_redirect_url(request.args.get('url'))
        _capture(EventKind.CLICK)
        return redirect(url, code=302)

    @app.route('/api/generate-tracking-id', methods=['GET'])
    def generate_tracking_id():
        return jsonify({"trackingId": new_tracking_id()}), 200

    @app.route('/api/create-tracker', methods=['POST'])
    def create_tracker():
        """Register an outbound message and return its pixel."""
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("JSON body is required")

        recipient = require_recipient(data.get('recipient'))
        tracking_id = data.get('trackingId')
        tracking_id = require_tracking_id(tracking_id) if tracking_id else new_tracking_id()
        parent_id = data.get('parentTrackingId')
        if parent_id:
            require_tracking_id(parent_id, field='parentTrackingId')
        subject = data.get('subject') or ''
        if not isinstance(subject, str):
            raise ValidationError("subject must be a string")

        message = app.db.create_message(
            tracking_id=tracking_id,
            original_recipient=recipient,
            subject=subject,
            parent_tracking_id=parent_id,
        )
        tracking_url = build_tracking_url(_base_url(), tracking_id, recipient)
        logger.info("Tracker %s created for %s", tracking_id, recipient)

        return jsonify({
            "trackingId": tracking_id,
            "trackingUrl": tracking_url,
            "trackingHtml": build_tracking_html(tracking_url),
            "email": message.to_dict(),
        }), 201

    @app.route('/api/tracking-data/<tracking_id>', methods=['GET'])
    def get_tracking_data(tracking_id):
        """Anchor open with forwarded children."""
        history = app.queries.get_history(tracking_id)
        message = history.message if history else app.db.get_message(tracking_id)

        if history is None and message is None:
            raise NotFoundError(f"Tracking id {tracking_id} not found")

        return jsonify({
            "trackingId": tracking_id,
            "email": message.to_dict() if message else None,
            "history": history.to_dict() if history else None,
        }), 200

    @app.route('/api/tracking-data/<tracking_id>/events', methods=['GET'])
    def get_tracking_events(tracking_id):
        events = app.queries.get_events(tracking_id)
        if not events and app.db.get_message(tracking_id) is None:
            raise NotFoundError(f"Tracking id {tracking_id} not found")
        return jsonify([event.to_dict() for event in events]), 200

    @app.route('/api/statistics', methods=['GET'])
    def get_statistics():
        return jsonify([row.to_dict() for row in app.queries.get_statistics()]), 200

    @app.route('/api/emails', methods=['GET'])
    def list_emails():
        return jsonify(app.queries.list_messages()), 200

    @app.route('/api/emails/<email_id>/summary', methods=['GET'])
    def get_email_summary(email_id):
        try:
            depth = int(request.args.get('depth', 1))
        except ValueError:
            raise ValidationError("depth must be an integer")
        if depth < 0:
            raise ValidationError("depth must not be negative")

        summary = app.queries.get_email_summary(email_id, max_depth=depth)
        if summary is None:
            raise NotFoundError(f"Email {email_id} not found")
        return jsonify(summary.to_dict()), 200

    return app
