"""IP -> country code lookup for the DDoS geographic filter.

Best effort by contract: a lookup that times out, errors, or returns junk
is "unknown", and unknown always means allow.  Failures are logged at DEBUG
only; geolocation outages are not security events.
"""

import ipaddress
import logging
import time
from typing import Callable

import requests

from shield.config import GeoConfig

logger = logging.getLogger(__name__)


class CountryResolver:
    """HTTP lookup (ip-api.com compatible) with an in-memory TTL cache."""

    def __init__(self, config: GeoConfig, session: requests.Session | None = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.session = session or requests.Session()
        self._clock = clock
        # ip -> (country_code, expires)
        self._cache: dict[str, tuple[str, float]] = {}

    def country_of(self, ip: str) -> str | None:
        """Two-letter country code, or None when it cannot be determined."""
        if not _is_public(ip):
            return None
        now = self._clock()
        cached = self._cache.get(ip)
        if cached is not None:
            code, expires = cached
            if expires > now:
                return code
            del self._cache[ip]

        url = self.config.lookup_url.format(ip=ip)
        try:
            response = self.session.get(url, timeout=self.config.timeout_seconds)
            response.raise_for_status()
            code = response.json().get("countryCode")
        except (requests.RequestException, ValueError, AttributeError) as e:
            logger.debug("Country lookup failed for %s: %s", ip, e)
            return None

        if not code:
            logger.debug("Country lookup for %s returned no country", ip)
            return None
        code = str(code).strip().upper()
        # Forget expired lookups so the cache is bounded by the TTL.
        for k in [k for k, (_, expires) in self._cache.items() if expires <= now]:
            del self._cache[k]
        self._cache[ip] = (code, now + self.config.cache_ttl_seconds)
        return code


def _is_public(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (addr.is_private or addr.is_loopback or addr.is_link_local
                or addr.is_reserved or addr.is_multicast or addr.is_unspecified)
