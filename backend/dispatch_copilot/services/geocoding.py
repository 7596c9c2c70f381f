"""Reverse geocoding for fleet snapshots via the Google Geocoding API."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from dispatch_copilot.core.config import get_settings
from dispatch_copilot.core.logging import logger


class GeocodingError(Exception):
    """Raised when the geocoding API cannot be reached or answers with an error."""


@dataclass
class GeocodeResult:
    city: Optional[str]
    state: Optional[str]
    description: Optional[str]


class ReverseGeocoder:
    """Turns coordinates into "near City, ST" text; disabled without an API key."""

    def __init__(self, api_key: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = get_settings()
        self._api_key = (api_key if api_key is not None else self.settings.google_maps_api_key or "").strip()
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self._api_key)

    @staticmethod
    def _describe(city: Optional[str], state: Optional[str]) -> Optional[str]:
        if city and state:
            return f"near {city}, {state}"
        if city:
            return f"near {city}"
        if state:
            return f"in {state}"
        return None

    @classmethod
    def parse_response(cls, payload: Dict[str, Any]) -> Optional[GeocodeResult]:
        results = payload.get("results") or []
        if not results:
            return None
        city = None
        state = None
        for component in results[0].get("address_components") or []:
            types = component.get("types") or []
            if "locality" in types:
                city = component.get("long_name")
            elif "administrative_area_level_1" in types:
                state = component.get("short_name")
        return GeocodeResult(city=city, state=state, description=cls._describe(city, state))

    async def reverse(self, latitude: float, longitude: float) -> Optional[GeocodeResult]:
        if not self.is_configured():
            return None
        params = {"latlng": f"{latitude},{longitude}", "key": self._api_key}
        try:
            async with httpx.AsyncClient(
                timeout=float(self.settings.geocode_timeout_seconds),
                transport=self._transport,
            ) as client:
                response = await client.get(self.settings.google_geocode_url, params=params)
        except httpx.HTTPError as exc:
            raise GeocodingError(f"Geocode request failed: {exc}") from exc
        if response.status_code >= 400:
            raise GeocodingError(f"Geocode request failed ({response.status_code}): {response.text[:200]}")
        try:
            return self.parse_response(response.json())
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise GeocodingError(f"Geocode response was not usable: {exc}") from exc

    async def enrich(self, vehicles: list, max_vehicles: Optional[int] = None) -> int:
        """Fill city/state/location_text on up to `max_vehicles` positioned vehicles."""
        if not self.is_configured():
            return 0
        budget = int(max_vehicles if max_vehicles is not None else self.settings.geocode_max_per_call)
        enriched = 0
        for vehicle in vehicles:
            if enriched >= budget:
                break
            if vehicle.latitude is None or vehicle.longitude is None:
                continue
            try:
                geo = await self.reverse(vehicle.latitude, vehicle.longitude)
            except GeocodingError as exc:
                logger.warning("Reverse geocoding skipped", vehicle_id=vehicle.vehicle_id, error=str(exc))
                continue
            if geo:
                vehicle.city = geo.city
                vehicle.state = geo.state
                vehicle.location_text = geo.description
                enriched += 1
        return enriched
