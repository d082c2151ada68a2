"""Email open tracking with best-effort forward detection."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .logging import setup_logging
from .database import Database
from .geo import GeoResolver
from .signals import ClientSignalExtractor, parse_device
from .classifier import ForwardClassifier
from .recorder import OpenEventRecorder
from .query import TrackingQueryService
from .app import create_app

__all__ = [
    "Settings",
    "load_settings",
    "setup_logging",
    "Database",
    "GeoResolver",
    "ClientSignalExtractor",
    "parse_device",
    "ForwardClassifier",
    "OpenEventRecorder",
    "TrackingQueryService",
    "create_app",
]
