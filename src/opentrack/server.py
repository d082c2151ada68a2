#!/usr/bin/env python
"""
Email tracking server - serves the tracking pixel, click redirects and the query API.
"""

import atexit
import logging

from .app import create_app
from .config import Settings, load_settings
from .logging import setup_logging

logger = logging.getLogger(__name__)


def create_tracking_app(settings: Settings = None):
    """Create and configure the tracking application."""
    settings = settings or load_settings()
    setup_logging(settings=settings)

    app = create_app(settings)
    atexit.register(app.shutdown)
    return app


def run(settings: Settings = None) -> None:
    settings = settings or load_settings()
    app = create_tracking_app(settings)

    host = settings.server.host
    port = settings.server.port

    logger.info("Starting Email Tracking Server on %s:%s", host, port)
    logger.info("Tracking pixel: http://%s:%s/api/track?id=<trackingId>", host, port)
    logger.info("Health Check: http://%s:%s/health", host, port)

    app.run(host=host, port=port, debug=settings.server.debug or settings.debug, use_reloader=False)


if __name__ == '__main__':
    run()
