"""IP to location lookup backed by a MaxMind City database."""

import ipaddress
import logging
import os
import threading
from typing import Optional

import geoip2.database
import geoip2.errors

from .models import Location

logger = logging.getLogger(__name__)


def first_ip(raw_ip: Optional[str]) -> Optional[str]:
    """First address of an ``X-Forwarded-For`` style chain, trimmed."""
    if not raw_ip:
        return None
    candidate = raw_ip.split(',')[0].strip()
    return candidate or None


def is_public_address(ip: str) -> bool:
    """True when ``ip`` parses and is routable on the public internet."""
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (
        address.is_private
        or address.is_loopback
        or address.is_reserved
        or address.is_link_local
        or address.is_multicast
        or address.is_unspecified
    )


class GeoResolver:
    """Resolve client IPs to a :class:`Location`.

    Absence of data is represented as ``None``; ``resolve`` never raises.
    Loopback, private and malformed addresses are not looked up at all.
    """

    def __init__(self, database_path: Optional[str] = None, reader=None):
        self.database_path = database_path
        self._reader = reader
        self._lock = threading.Lock()
        self._unavailable = False

    def _get_reader(self):
        if self._reader is not None or self._unavailable:
            return self._reader

        with self._lock:
            if self._reader is None and not self._unavailable:
                if self.database_path and os.path.exists(self.database_path):
                    try:
                        self._reader = geoip2.database.Reader(self.database_path)
                    except (OSError, ValueError) as e:
                        logger.warning("Could not open GeoIP database %s: %s", self.database_path, e)
                        self._unavailable = True
                else:
                    logger.info("GeoIP database not found at %s; locations disabled", self.database_path)
                    self._unavailable = True
        return self._reader

    def resolve(self, ip: Optional[str]) -> Optional[Location]:
        candidate = first_ip(ip)
        if candidate is None or not is_public_address(candidate):
            return None

        reader = self._get_reader()
        if reader is None:
            return None

        try:
            response = reader.city(candidate)
        except geoip2.errors.AddressNotFoundError:
            logger.debug("No GeoIP record for %s", candidate)
            return None
        except Exception as e:
            logger.warning("GeoIP lookup failed for %s: %s", candidate, e)
            return None

        return Location(
            country=response.country.iso_code,
            region=response.subdivisions.most_specific.iso_code,
            city=response.city.name,
            latitude=response.location.latitude,
            longitude=response.location.longitude,
        )

    def close(self) -> None:
        with self._lock:
            if self._reader is not None:
                self._reader.close()
                self._reader = None
