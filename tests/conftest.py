"""Shared test fixtures."""

import pytest

from opentrack.app import create_app
from opentrack.config import Settings
from opentrack.database import Database
from opentrack.models import DeviceInfo, OpenEvent, Signals
from opentrack.signals import parse_device


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "tracking.db")


@pytest.fixture
def db(db_path):
    """An opened event log, closed after the test."""
    database = Database(db_path).open()
    yield database
    database.close()


@pytest.fixture
def settings(db_path):
    return Settings(
        database={"path": db_path},
        geo={"enabled": False},
        recording={"synchronous": True},
    )


@pytest.fixture
def app(settings):
    application = create_app(settings)
    yield application
    application.shutdown()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_signals():
    """Build request signals the way the extractor would."""
    def _make(tracking_id="abc123", ip="1.1.1.1", user_agent="UA-A", forwarded_by=None, email=None):
        return Signals(
            tracking_id=tracking_id,
            claimed_original_recipient=email,
            forwarded_by_claim=forwarded_by,
            user_agent=user_agent,
            ip=ip,
            device_info=parse_device(user_agent),
        )
    return _make


@pytest.fixture
def make_event():
    def _make(ip="1.1.1.1", user_agent="UA-A", tracking_id="abc123", forwarded=False, forwarded_by=None):
        return OpenEvent(
            tracking_id=tracking_id,
            ip=ip,
            user_agent=user_agent,
            device_info=DeviceInfo(),
            classified_forwarded=forwarded,
            forwarded_by=forwarded_by,
        )
    return _make
