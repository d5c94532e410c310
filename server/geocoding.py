"""Reverse geocoding via Nominatim (OpenStreetMap, free, max 1 req/s)."""

import logging
import threading
import time
from typing import Optional

import requests

logger = logging.getLogger(__name__)

NOMINATIM_URL = "https://nominatim.openstreetmap.org/reverse"


class ReverseGeocoder:
    """Rate-limited Nominatim client with a cache keyed on ~10 m rounded coordinates.

    One instance is created at startup and shared; calls are serialized so the
    1 req/s policy holds across threads.
    """

    def __init__(
        self,
        user_agent: str = "FleetLocationServer/1.0",
        min_interval_s: float = 1.1,
        timeout_s: float = 10,
        language: str = "tr",
    ):
        self.user_agent = user_agent
        self.min_interval_s = min_interval_s
        self.timeout_s = timeout_s
        self.language = language
        self._cache: dict[str, Optional[str]] = {}
        self._lock = threading.Lock()
        self._last_call = 0.0

    def reverse(self, lat: float, lon: float) -> Optional[str]:
        """Look up a display address for the coordinates, or None."""
        key = f"{lat:.4f},{lon:.4f}"
        with self._lock:
            if key in self._cache:
                return self._cache[key]

            elapsed = time.time() - self._last_call
            if elapsed < self.min_interval_s:
                time.sleep(self.min_interval_s - elapsed)

            try:
                resp = requests.get(
                    NOMINATIM_URL,
                    params={
                        "lat": lat,
                        "lon": lon,
                        "format": "jsonv2",
                        "zoom": 18,
                        "addressdetails": 1,
                        "accept-language": self.language,
                    },
                    headers={"User-Agent": self.user_agent},
                    timeout=self.timeout_s,
                )
            except requests.RequestException as e:
                logger.warning("Nominatim reverse geocode failed: %s", e)
                return None
            finally:
                self._last_call = time.time()

            if resp.status_code != 200:
                logger.warning("Nominatim returned status %d for %s", resp.status_code, key)
                return None

            address = resp.json().get("display_name")
            self._cache[key] = address
            return address
