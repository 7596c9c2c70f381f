"""Locate trucks across the Motive, Samsara, and simulator telemetry feeds."""
from __future__ import annotations

import asyncio
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from dispatch_copilot.core.config import get_settings
from dispatch_copilot.core.logging import logger
from dispatch_copilot.models.fleet import (
    PROVIDER_LABELS,
    FleetSnapshot,
    LookupFailure,
    NormalizedVehicle,
    VehicleLookup,
    VehicleProvider,
)
from dispatch_copilot.services.dispatch_store import DispatchStore


KEYWORD_PATTERN = re.compile(r"\b(?:truck|unit|tractor|trailer)\b\s*#?\s*([A-Za-z0-9-]+)", re.IGNORECASE)
TOKEN_SPLIT = re.compile(r"[\s,;:!?/\\]+")
UUID_PATTERN = re.compile(r"^[0-9a-fA-F-]{36}$")


def extract_vehicle_identifier(raw: Optional[str]) -> Optional[str]:
    """Pull the most ID-like token out of free text such as "where is truck #2203"."""
    text = str(raw or "").strip()
    if not text:
        return None

    match = KEYWORD_PATTERN.search(text)
    if match:
        return match.group(1)

    tokens = [token for token in TOKEN_SPLIT.split(text) if token]
    if not tokens:
        return None

    mixed = [token for token in tokens if re.search(r"[A-Za-z]", token) and re.search(r"\d", token)]
    if mixed:
        return mixed[-1]

    numeric = [token for token in tokens if token.isdigit()]
    if numeric:
        return numeric[-1]

    return tokens[-1]


def _float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _flag(value: Any) -> Optional[bool]:
    return None if value is None else bool(value)


def _parse_iso_utc(value: Optional[str]) -> datetime:
    floor = datetime.min.replace(tzinfo=timezone.utc)
    text = str(value or "").strip()
    if not text:
        return floor
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return floor
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _position(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "latitude": _float(row.get("latitude")),
        "longitude": _float(row.get("longitude")),
        "heading_degrees": _float(row.get("heading_degrees")),
        "speed_mph": _float(row.get("speed_mph")),
        "odometer_miles": _float(row.get("odometer_miles")),
        "ignition_on": _flag(row.get("ignition_on")),
        "located_at": row.get("located_at"),
        "last_synced_at": row.get("last_synced_at"),
    }


class TelemetryProvider:
    """One vehicle-tracking source read from its synced current-location tables."""

    provider: VehicleProvider

    def __init__(self, store: DispatchStore) -> None:
        self.store = store

    @property
    def label(self) -> str:
        return PROVIDER_LABELS[self.provider]

    def find_sync(self, org_id: str, identifier: str) -> Optional[NormalizedVehicle]:
        raise NotImplementedError

    def latest_sync(self, org_id: str, limit: int) -> List[NormalizedVehicle]:
        raise NotImplementedError

    async def find(self, org_id: str, identifier: str) -> Optional[NormalizedVehicle]:
        return await asyncio.to_thread(self.find_sync, org_id, identifier)

    async def latest(self, org_id: str, limit: int) -> List[NormalizedVehicle]:
        return await asyncio.to_thread(self.latest_sync, org_id, limit)


class MotiveProvider(TelemetryProvider):
    provider = VehicleProvider.MOTIVE

    def normalize(self, row: Dict[str, Any]) -> NormalizedVehicle:
        vehicle_id = str(row.get("motive_vehicle_id"))
        return NormalizedVehicle(
            provider=self.provider,
            provider_label=self.label,
            vehicle_id=vehicle_id,
            display_name=row.get("vehicle_number") or row.get("name") or row.get("license_plate")
            or f"Motive Vehicle {vehicle_id}",
            license_plate=row.get("license_plate") or None,
            vin=row.get("vin") or None,
            make=row.get("make") or None,
            model=row.get("model") or None,
            year=_int(row.get("year")),
            status=row.get("status") or None,
            availability_status=row.get("availability_status") or None,
            **_position(row),
        )

    def find_sync(self, org_id: str, identifier: str) -> Optional[NormalizedVehicle]:
        clean = identifier.strip()
        if not clean:
            return None
        rows = self.store.find_motive_locations(org_id, clean, match_id=clean.isdigit(), limit=1)
        return self.normalize(rows[0]) if rows else None

    def latest_sync(self, org_id: str, limit: int) -> List[NormalizedVehicle]:
        return [self.normalize(row) for row in self.store.latest_motive_locations(org_id, limit)]


class SamsaraProvider(TelemetryProvider):
    provider = VehicleProvider.TELEMATICS_B

    def normalize(self, location: Dict[str, Any], vehicle: Optional[Dict[str, Any]] = None) -> NormalizedVehicle:
        vehicle = vehicle or location
        vehicle_id = str(location.get("samsara_vehicle_id"))
        is_active = vehicle.get("is_active")
        return NormalizedVehicle(
            provider=self.provider,
            provider_label=self.label,
            vehicle_id=vehicle_id,
            display_name=vehicle.get("name") or vehicle.get("license_plate") or f"Samsara Vehicle {vehicle_id}",
            license_plate=vehicle.get("license_plate") or None,
            license_plate_state=vehicle.get("license_plate_state") or None,
            vin=vehicle.get("vin") or None,
            make=vehicle.get("make") or None,
            model=vehicle.get("model") or None,
            year=_int(vehicle.get("model_year")),
            status=vehicle.get("status") or None,
            availability_status=None if is_active is None else ("active" if is_active else "inactive"),
            **_position(location),
        )

    def find_sync(self, org_id: str, identifier: str) -> Optional[NormalizedVehicle]:
        clean = identifier.strip()
        if not clean:
            return None
        vehicles = self.store.find_samsara_vehicles(org_id, clean, limit=3)
        if not vehicles:
            return None
        locations = self.store.latest_locations_for(
            "samsara_vehicle_locations_current",
            "samsara_vehicle_id",
            org_id,
            [row["samsara_vehicle_id"] for row in vehicles],
            limit=1,
        )
        if not locations:
            return None
        location = locations[0]
        vehicle = next(
            (row for row in vehicles if row["samsara_vehicle_id"] == location["samsara_vehicle_id"]),
            None,
        )
        return self.normalize(location, vehicle)

    def latest_sync(self, org_id: str, limit: int) -> List[NormalizedVehicle]:
        return [self.normalize(row) for row in self.store.latest_samsara_locations(org_id, limit)]


class SimulatedProvider(TelemetryProvider):
    provider = VehicleProvider.SIMULATED

    def normalize(self, location: Dict[str, Any], vehicle: Optional[Dict[str, Any]] = None) -> NormalizedVehicle:
        vehicle = vehicle or location
        vehicle_id = str(location.get("simulated_vehicle_id"))
        active = "active" if vehicle.get("is_active") else "inactive"
        return NormalizedVehicle(
            provider=self.provider,
            provider_label=self.label,
            vehicle_id=vehicle_id,
            display_name=vehicle.get("name") or vehicle.get("code") or f"Simulated Vehicle {vehicle_id}",
            make=vehicle.get("make") or None,
            model=vehicle.get("model") or None,
            year=_int(vehicle.get("year")),
            status=active,
            availability_status=active,
            **_position(location),
        )

    def find_sync(self, org_id: str, identifier: str) -> Optional[NormalizedVehicle]:
        raw = identifier.strip()
        if not raw:
            return None
        # "truck 4812ca12" style leftovers
        clean = re.sub(r"truck", "", raw, flags=re.IGNORECASE).strip() or raw
        vehicles = self.store.find_simulated_vehicles(
            org_id,
            clean,
            match_id=bool(UUID_PATTERN.match(clean)),
            limit=3,
        )
        if not vehicles:
            return None
        locations = self.store.latest_locations_for(
            "simulated_vehicle_locations_current",
            "simulated_vehicle_id",
            org_id,
            [row["id"] for row in vehicles],
            limit=1,
        )
        if not locations:
            return None
        location = locations[0]
        vehicle = next((row for row in vehicles if row["id"] == location["simulated_vehicle_id"]), None)
        return self.normalize(location, vehicle)

    def latest_sync(self, org_id: str, limit: int) -> List[NormalizedVehicle]:
        return [self.normalize(row) for row in self.store.latest_simulated_locations(org_id, limit)]


class VehicleLocator:
    """Fan a lookup out to every provider at once and keep the highest-priority hit."""

    def __init__(
        self,
        store: DispatchStore,
        providers: Optional[Sequence[TelemetryProvider]] = None,
        geocoder: Any = None,
        provider_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.settings = get_settings()
        # Order is merge priority: live feeds before the simulator.
        self.providers: List[TelemetryProvider] = list(
            providers
            if providers is not None
            else [MotiveProvider(store), SamsaraProvider(store), SimulatedProvider(store)]
        )
        self.geocoder = geocoder
        self.provider_timeout_seconds = float(
            provider_timeout_seconds
            if provider_timeout_seconds is not None
            else self.settings.fleet_provider_timeout_seconds
        )

    async def _guarded(self, provider: TelemetryProvider, operation: str, call) -> Any:
        # A timed-out worker thread keeps running; store reads for providers use
        # their own short-lived connection, so it holds no shared lock.
        try:
            return await asyncio.wait_for(call, timeout=self.provider_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Telemetry provider timed out",
                provider=provider.provider.value,
                operation=operation,
                timeout_seconds=self.provider_timeout_seconds,
            )
        except Exception as exc:
            logger.error(
                "Telemetry provider failed",
                provider=provider.provider.value,
                operation=operation,
                error=str(exc),
            )
        return None

    async def locate_vehicle(self, raw_query: Optional[str], org_id: Optional[str]) -> VehicleLookup:
        query = str(raw_query or "")
        if not org_id:
            logger.warning("Vehicle lookup without organization scope", query=query)
            return VehicleLookup(query=query, reason=LookupFailure.MISSING_ORG)

        identifier = extract_vehicle_identifier(query)
        if not identifier:
            return VehicleLookup(query=query, reason=LookupFailure.EMPTY_QUERY)

        results = await asyncio.gather(
            *(self._guarded(provider, "find", provider.find(org_id, identifier)) for provider in self.providers)
        )
        candidate = next((vehicle for vehicle in results if vehicle is not None), None)
        if candidate is None:
            logger.info("No vehicle matched across providers", org_id=org_id, identifier=identifier)
            return VehicleLookup(query=query, identifier=identifier, reason=LookupFailure.NOT_FOUND)

        logger.info(
            "Vehicle located",
            org_id=org_id,
            identifier=identifier,
            provider=candidate.provider.value,
            vehicle_id=candidate.vehicle_id,
        )
        return VehicleLookup(query=query, identifier=identifier, vehicle=candidate)

    async def latest_fleet(self, org_id: str, provider: str = "all", limit: Optional[int] = None) -> FleetSnapshot:
        started = time.time()
        wanted = str(provider or "all").strip().lower()
        size = max(1, min(int(limit or self.settings.fleet_default_limit), 100))
        selected = [p for p in self.providers if wanted == "all" or p.provider.value == wanted]
        if not selected:
            raise ValueError(f"Unknown provider '{provider}'")

        batches = await asyncio.gather(
            *(self._guarded(p, "latest", p.latest(org_id, size)) for p in selected)
        )
        vehicles: List[NormalizedVehicle] = [vehicle for batch in batches if batch for vehicle in batch]
        vehicles.sort(key=lambda vehicle: _parse_iso_utc(vehicle.located_at), reverse=True)
        vehicles = vehicles[:size]

        if self.geocoder is not None:
            await self.geocoder.enrich(vehicles)

        return FleetSnapshot(
            provider=wanted,
            vehicles=vehicles,
            duration_ms=round((time.time() - started) * 1000, 2),
        )
