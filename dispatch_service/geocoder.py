# dispatch_service/geocoder.py
import logging
import random
from dataclasses import dataclass
from typing import Optional

import httpx

from dispatch_service import config

logger = logging.getLogger("dispatch-service.geocoder")
logger.setLevel(logging.INFO)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"


@dataclass
class GeoPoint:
    latitude: float
    longitude: float
    formatted_address: str
    approximate: bool = False


class GoogleGeocoder:
    """
    Address → coordinates through the Google Geocoding API.

    Never fails: on a missing key, timeout, HTTP error or empty result it
    returns a point jittered around the fallback centre flagged
    ``approximate`` so order creation can proceed.
    """

    def __init__(
        self,
        api_key: Optional[str] = config.GOOGLE_MAPS_API_KEY,
        timeout: float = config.GEOCODER_TIMEOUT_SECONDS,
        fallback=(config.FALLBACK_LATITUDE, config.FALLBACK_LONGITUDE),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.fallback = fallback
        self.transport = transport

    async def geocode(self, address: str) -> GeoPoint:
        if not self.api_key:
            logger.warning("[Geocoder] GOOGLE_MAPS_API_KEY not configured, using approximate coordinates")
            return self._approximate(address)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.get(GEOCODE_URL, params={"address": address, "key": self.api_key})
                r.raise_for_status()
                body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[Geocoder] Lookup failed for '{address}': {e}")
            return self._approximate(address)

        if body.get("status") != "OK" or not body.get("results"):
            logger.warning(f"[Geocoder] No result for '{address}': {body.get('status')}")
            return self._approximate(address)

        result = body["results"][0]
        location = result["geometry"]["location"]
        return GeoPoint(
            latitude=location["lat"],
            longitude=location["lng"],
            formatted_address=result.get("formatted_address", address),
        )

    def _approximate(self, address: str) -> GeoPoint:
        lat, lon = self.fallback
        return GeoPoint(
            latitude=lat + (random.random() - 0.5) * 0.01,
            longitude=lon + (random.random() - 0.5) * 0.01,
            formatted_address=address,
            approximate=True,
        )
