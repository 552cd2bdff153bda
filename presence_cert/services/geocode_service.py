"""
Geocode Service - OpenStreetMap Nominatim reverse geocoding

Turns the client-reported coordinate of a self-certification into a
human-readable address for the recap screen and the evidence trail.
Best-effort enrichment only: every failure yields None.
"""
import json
import logging
import threading
import time
from typing import Dict, Any, Optional

import httpx
import redis
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from presence_cert.config import settings

logger = logging.getLogger(__name__)


class GeocodeService:
    """
    Reverse geocoding with:
    - Redis caching with configurable TTL (keys rounded to ~11 m)
    - Rate limiting (Nominatim allows 1 request/sec)
    - Timeouts and retries
    """

    def __init__(self):
        self._redis_client: Optional[redis.Redis] = None
        self._last_request_time: float = 0
        self._min_request_interval: float = 1.0
        self._rate_lock = threading.Lock()

    def _get_redis(self) -> Optional[redis.Redis]:
        """Get Redis client for caching"""
        if self._redis_client is None:
            try:
                self._redis_client = redis.from_url(
                    settings.REDIS_URL,
                    decode_responses=True
                )
                self._redis_client.ping()
            except Exception as e:
                logger.warning(f"Redis unavailable for geocode caching: {e}")
                self._redis_client = None
        return self._redis_client

    @staticmethod
    def _get_cache_key(latitude: float, longitude: float) -> str:
        return f"reverse-geocode:{latitude:.4f}:{longitude:.4f}"

    def _get_cached_result(self, latitude: float, longitude: float) -> Optional[Dict[str, Any]]:
        try:
            r = self._get_redis()
            if r:
                cached = r.get(self._get_cache_key(latitude, longitude))
                if cached:
                    return json.loads(cached)
        except Exception as e:
            logger.warning(f"Cache read error: {e}")
        return None

    def _set_cached_result(self, latitude: float, longitude: float, result: Dict[str, Any]) -> None:
        try:
            r = self._get_redis()
            if r:
                r.setex(
                    self._get_cache_key(latitude, longitude),
                    settings.NOMINATIM_CACHE_TTL_SEC,
                    json.dumps(result)
                )
        except Exception as e:
            logger.warning(f"Cache write error: {e}")

    def _rate_limit(self) -> None:
        with self._rate_lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self._min_request_interval:
                time.sleep(self._min_request_interval - elapsed)
            self._last_request_time = time.time()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.HTTPStatusError))
    )
    def _make_nominatim_request(self, latitude: float, longitude: float) -> Dict[str, Any]:
        """Make request to Nominatim API with retries"""
        self._rate_limit()

        headers = {
            "User-Agent": settings.NOMINATIM_USER_AGENT,
            "Accept": "application/json"
        }
        params = {
            "lat": latitude,
            "lon": longitude,
            "format": "json",
            "addressdetails": 1
        }

        with httpx.Client(timeout=settings.NOMINATIM_TIMEOUT_SEC) as client:
            response = client.get(
                f"{settings.NOMINATIM_URL}/reverse",
                params=params,
                headers=headers
            )
            response.raise_for_status()
            return response.json()

    @staticmethod
    def format_address(payload: Dict[str, Any]) -> Optional[str]:
        """Short street-level address, falling back to display_name."""
        details = payload.get("address") or {}
        street = " ".join(
            part for part in (details.get("house_number"), details.get("road")) if part
        )
        locality = details.get("city") or details.get("town") or details.get("village")
        place = " ".join(part for part in (details.get("postcode"), locality) if part)
        short = ", ".join(part for part in (street, place) if part)
        return short or payload.get("display_name") or None

    def reverse_geocode(self, latitude: float, longitude: float) -> Optional[str]:
        """
        Reverse geocode a coordinate.

        Returns:
            Address string, or None when not found or on any failure
        """
        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            return None

        cached = self._get_cached_result(latitude, longitude)
        if cached is not None:
            logger.debug(f"Reverse geocode cache hit for ({latitude}, {longitude})")
            return cached.get("address")

        try:
            payload = self._make_nominatim_request(latitude, longitude)
        except Exception as e:
            logger.error(f"Reverse geocode failed for ({latitude}, {longitude}): {e}")
            return None

        address = self.format_address(payload) if payload and not payload.get("error") else None
        self._set_cached_result(latitude, longitude, {"address": address})
        return address


# Singleton instance
geocode_service = GeocodeService()
