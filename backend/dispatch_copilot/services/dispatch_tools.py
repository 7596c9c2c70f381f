"""Dispatch tool catalogue executed on behalf of the assistant."""
from __future__ import annotations

import json
import random
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from dispatch_copilot.core.logging import logger
from dispatch_copilot.models.assistant import ToolContext
from dispatch_copilot.models.dispatch import (
    DriverStatus,
    EntityKind,
    LoadCreateRequest,
    LoadStatus,
    LoadUpdateFields,
    Resolution,
    ResolutionStatus,
)
from dispatch_copilot.models.fleet import VehicleProvider
from dispatch_copilot.services.dispatch_store import DispatchStore, DispatchStoreError, DriverAlreadyAssignedError
from dispatch_copilot.services.entity_resolution import EntityResolver
from dispatch_copilot.services.vehicle_locator import VehicleLocator


class ToolValidationError(Exception):
    """Raised when a tool call is missing arguments or asks for an invalid change."""


LOAD_REQUIRED_FIELDS = (
    "origin",
    "destination",
    "rate",
    "pickup_date",
    "delivery_date",
    "shipper",
    "equipment_type",
    "customer_reference",
)


def generate_load_reference(today: Optional[date] = None) -> str:
    """Human-readable reference like LD-2025-0412; collisions are not checked."""
    year = (today or datetime.now(timezone.utc).date()).year
    return f"LD-{year}-{random.randint(0, 9999):04d}"


def _clamp_limit(value: Any, default: int = 10, maximum: int = 50) -> int:
    try:
        limit = int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        limit = default
    return max(1, min(limit, maximum))


def _is_expired(value: Any, today: date) -> bool:
    text = str(value or "").strip()
    if not text:
        return False
    try:
        return date.fromisoformat(text[:10]) < today
    except ValueError:
        return False


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        field = ".".join(str(piece) for piece in error.get("loc", ()))
        parts.append(f"{field}: {error.get('msg')}" if field else str(error.get("msg")))
    return "; ".join(parts)


class DispatchToolExecutor:
    """Validates arguments, resolves references, and performs at most one write per call.

    Every call returns a dict: `{"success": True, ...}` or `{"error": "..."}`.
    """

    def __init__(
        self,
        store: DispatchStore,
        resolver: Optional[EntityResolver] = None,
        locator: Optional[VehicleLocator] = None,
    ) -> None:
        self.store = store
        self.locator = locator
        self.resolver = resolver or EntityResolver(store, vehicle_locator=locator)

    @staticmethod
    def tool_schemas() -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": "search_loads",
                    "description": "Search for loads by status or criteria",
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "status": {
                                "type": "string",
                                "enum": [status.value for status in LoadStatus] + ["all"],
                                "description": "Load status to filter by",
                            },
                            "destination": {"type": "string", "description": "Filter by destination city/state"},
                            "origin": {"type": "string", "description": "Filter by origin city/state"},
                            "limit": {"type": "number", "description": "Max number of results (default 10)"},
                        },
                    },
                },
            },
            {
                "type": "function",
                "function": {
                    "name": "search_drivers",
                    "description": "Search for drivers by status or location notes",
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "status": {
                                "type": "string",
                                "enum": [status.value for status in DriverStatus] + ["all"],
                                "description": "Driver status filter",
                            },
                            "location": {"type": "string", "description": "Search driver notes for location keywords"},
                            "limit": {"type": "number", "description": "Max results (default 10)"},
                        },
                    },
                },
            },
            {
                "type": "function",
                "function": {
                    "name": "create_load",
                    "description": "Create a new load. Only call when you have ALL required fields.",
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "origin": {"type": "string", "description": "Pickup location"},
                            "destination": {"type": "string", "description": "Delivery location"},
                            "rate": {"type": "number", "description": "Rate in dollars"},
                            "pickup_date": {"type": "string", "description": "Pickup date (YYYY-MM-DD)"},
                            "delivery_date": {"type": "string", "description": "Delivery date (YYYY-MM-DD)"},
                            "shipper": {"type": "string", "description": "Shipper/customer name"},
                            "equipment_type": {
                                "type": "string",
                                "description": "Equipment type (dry van, reefer, flatbed, etc)",
                            },
                            "customer_reference": {"type": "string", "description": "Customer PO/reference number"},
                            "weight": {"type": "number", "description": "Weight in pounds"},
                            "commodity": {"type": "string", "description": "What is being shipped"},
                            "miles": {"type": "number", "description": "Distance in miles"},
                        },
                        "required": list(LOAD_REQUIRED_FIELDS),
                    },
                },
            },
            {
                "type": "function",
                "function": {
                    "name": "update_load",
                    "description": "Update details of an existing load",
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "load_reference": {
                                "type": "string",
                                "description": "Load reference number (e.g., LD-2025-1234)",
                            },
                            "updates": {
                                "type": "object",
                                "description": "Fields to update",
                                "properties": {
                                    "rate": {"type": "number"},
                                    "pickup_date": {"type": "string"},
                                    "delivery_date": {"type": "string"},
                                    "origin": {"type": "string"},
                                    "destination": {"type": "string"},
                                    "shipper": {"type": "string"},
                                    "equipment_type": {"type": "string"},
                                    "customer_reference": {"type": "string"},
                                    "weight": {"type": "number"},
                                    "commodity": {"type": "string"},
                                    "miles": {"type": "number"},
                                    "status": {"type": "string", "enum": [status.value for status in LoadStatus]},
                                },
                            },
                        },
                        "required": ["load_reference", "updates"],
                    },
                },
            },
            {
                "type": "function",
                "function": {
                    "name": "assign_driver_to_load",
                    "description": "Assign a driver to a load",
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "driver_name": {"type": "string", "description": "Driver full or partial name"},
                            "load_reference": {"type": "string", "description": "Load reference number"},
                        },
                        "required": ["driver_name", "load_reference"],
                    },
                },
            },
            {
                "type": "function",
                "function": {
                    "name": "get_load_details",
                    "description": "Get full details about a specific load, including its assigned driver",
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "load_reference": {"type": "string", "description": "Load reference number"},
                        },
                        "required": ["load_reference"],
                    },
                },
            },
            {
                "type": "function",
                "function": {
                    "name": "locate_truck",
                    "description": "Find the current location of one truck by number, name, plate, or unit id",
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "query": {"type": "string", "description": "Operator text, e.g. 'where is truck 2203'"},
                        },
                        "required": ["query"],
                    },
                },
            },
            {
                "type": "function",
                "function": {
                    "name": "search_fleet_latest",
                    "description": "List the latest known truck positions across telemetry providers",
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "provider": {
                                "type": "string",
                                "enum": ["all"] + [provider.value for provider in VehicleProvider],
                            },
                            "limit": {"type": "integer", "minimum": 1, "maximum": 100},
                        },
                    },
                },
            },
        ]

    @classmethod
    def tool_names(cls) -> List[str]:
        return [schema["function"]["name"] for schema in cls.tool_schemas()]

    @staticmethod
    def _unresolved(resolution: Resolution, noun: str) -> Dict[str, Any]:
        if resolution.status == ResolutionStatus.AMBIGUOUS:
            field = "reference" if resolution.kind == EntityKind.LOAD else "full_name"
            names = ", ".join(str(row.get(field)) for row in resolution.candidates)
            return {
                "error": (
                    f"{noun} \"{resolution.reference}\" matches several records ({names}). "
                    "Ask the operator which one they mean."
                ),
                "candidates": resolution.candidates,
            }
        return {"error": f"{noun} \"{resolution.reference}\" not found in your organization"}

    async def _tool_search_loads(self, args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        raw_status = str(args.get("status") or "all").strip().upper()
        status = None
        if raw_status != "ALL":
            try:
                status = LoadStatus(raw_status)
            except ValueError as exc:
                raise ToolValidationError(f"Unsupported load status '{args.get('status')}'") from exc
        loads = self.store.search_loads(
            context.org_id,
            status=status,
            origin=str(args.get("origin") or "").strip() or None,
            destination=str(args.get("destination") or "").strip() or None,
            limit=_clamp_limit(args.get("limit")),
        )
        return {"success": True, "count": len(loads), "loads": loads}

    async def _tool_search_drivers(self, args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        raw_status = str(args.get("status") or "all").strip().upper()
        status = None
        if raw_status != "ALL":
            try:
                status = DriverStatus(raw_status)
            except ValueError as exc:
                raise ToolValidationError(f"Unsupported driver status '{args.get('status')}'") from exc
        drivers = self.store.search_drivers(
            context.org_id,
            status=status,
            location=str(args.get("location") or "").strip() or None,
            limit=_clamp_limit(args.get("limit")),
        )
        today = datetime.now(timezone.utc).date()
        for driver in drivers:
            driver["med_expired"] = _is_expired(driver.get("med_exp"), today)
            driver["cdl_expired"] = _is_expired(driver.get("cdl_exp"), today)
        return {"success": True, "count": len(drivers), "drivers": drivers}

    async def _tool_create_load(self, args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        missing = [field for field in LOAD_REQUIRED_FIELDS if args.get(field) in (None, "")]
        if missing:
            raise ToolValidationError(f"Missing required load fields: {', '.join(missing)}")
        try:
            payload = LoadCreateRequest(**{key: args.get(key) for key in LoadCreateRequest.model_fields if key in args})
        except ValidationError as exc:
            raise ToolValidationError(f"Invalid load fields: {_validation_message(exc)}") from exc

        reference = generate_load_reference()
        row = self.store.insert_load(
            context.org_id,
            {**payload.model_dump(), "reference": reference, "status": LoadStatus.AVAILABLE.value},
            created_by=context.user_id,
        )
        logger.info("Load created by assistant", org_id=context.org_id, reference=reference)
        return {"success": True, "load": row, "message": f"Created load {row.get('reference')}"}

    async def _tool_update_load(self, args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        reference = str(args.get("load_reference") or "").strip()
        if not reference:
            raise ToolValidationError("load_reference is required")
        raw_updates = args.get("updates")
        if not isinstance(raw_updates, dict) or not raw_updates:
            raise ToolValidationError("updates must be a non-empty object of load fields")
        if "status" in raw_updates and isinstance(raw_updates["status"], str):
            raw_updates = {**raw_updates, "status": raw_updates["status"].strip().upper()}
        unknown = sorted(set(raw_updates) - set(LoadUpdateFields.model_fields))
        try:
            fields = LoadUpdateFields(**{k: v for k, v in raw_updates.items() if k in LoadUpdateFields.model_fields})
        except ValidationError as exc:
            raise ToolValidationError(f"Invalid load update: {_validation_message(exc)}") from exc
        changes = fields.model_dump(mode="json", exclude_unset=True)
        if not changes:
            raise ToolValidationError(f"No updatable load fields supplied (ignored: {', '.join(unknown)})")

        resolution = self.resolver.resolve_load(reference, context.org_id)
        if not resolution.is_unique:
            return self._unresolved(resolution, "Load")

        load = resolution.record or {}
        row = self.store.update_load(context.org_id, str(load.get("id")), changes)
        if row is None:
            return {"error": f"Load \"{reference}\" not found in your organization"}
        result: Dict[str, Any] = {"success": True, "load": row, "message": f"Updated load {load.get('reference')}"}
        if unknown:
            result["ignored_fields"] = unknown
        return result

    async def _tool_assign_driver_to_load(self, args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        driver_name = str(args.get("driver_name") or "").strip()
        load_reference = str(args.get("load_reference") or "").strip()
        if not driver_name or not load_reference:
            raise ToolValidationError("driver_name and load_reference are both required")

        driver_resolution = self.resolver.resolve_driver(driver_name, context.org_id)
        if not driver_resolution.is_unique:
            return self._unresolved(driver_resolution, "Driver")
        load_resolution = self.resolver.resolve_load(load_reference, context.org_id)
        if not load_resolution.is_unique:
            return self._unresolved(load_resolution, "Load")

        driver = driver_resolution.record or {}
        load = load_resolution.record or {}
        busy = {"error": f"{driver.get('full_name')} is already assigned to another load. Unassign them first."}
        if driver.get("status") == DriverStatus.ASSIGNED.value:
            return busy

        try:
            outcome = self.store.assign_driver(context.org_id, str(load.get("id")), str(driver.get("id")))
        except DriverAlreadyAssignedError:
            return busy
        logger.info(
            "Driver assigned by assistant",
            org_id=context.org_id,
            driver_id=driver.get("id"),
            load_reference=load.get("reference"),
            load_status=outcome["load_status"],
        )
        return {
            "success": True,
            "message": f"Assigned {driver.get('full_name')} to load {load.get('reference')}",
            "driver": {"id": driver.get("id"), "full_name": driver.get("full_name"), "status": outcome["driver_status"]},
            "load": {"id": load.get("id"), "reference": load.get("reference"), "status": outcome["load_status"]},
            "assignment_id": outcome["assignment"]["id"],
        }

    async def _tool_get_load_details(self, args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        reference = str(args.get("load_reference") or "").strip()
        if not reference:
            raise ToolValidationError("load_reference is required")
        resolution = self.resolver.resolve_load(reference, context.org_id)
        if not resolution.is_unique:
            return self._unresolved(resolution, "Load")
        load = dict(resolution.record or {})
        load["load_driver_assignments"] = self.store.assignments_for_load(context.org_id, str(load.get("id")))
        return {"success": True, "load": load}

    async def _tool_locate_truck(self, args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        if self.locator is None:
            raise ToolValidationError("Truck tracking is not configured")
        query = str(args.get("query") or "").strip()
        if not query:
            raise ToolValidationError("query is required")
        lookup = await self.locator.locate_vehicle(query, context.org_id)
        if lookup.vehicle is None:
            return {
                "error": f"No truck matching \"{lookup.identifier or query}\" was found in Motive, Samsara, or the simulator",
                "reason": lookup.reason.value if lookup.reason else None,
            }
        vehicle = lookup.vehicle
        return {
            "success": True,
            "provider": vehicle.provider.value,
            "provider_label": vehicle.provider_label,
            "truck_id": vehicle.vehicle_id,
            "truck_display_name": vehicle.display_name,
            "latitude": vehicle.latitude,
            "longitude": vehicle.longitude,
            "speed_mph": vehicle.speed_mph,
            "heading_degrees": vehicle.heading_degrees,
            "located_at": vehicle.located_at,
            "last_synced_at": vehicle.last_synced_at,
        }

    async def _tool_search_fleet_latest(self, args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        if self.locator is None:
            raise ToolValidationError("Truck tracking is not configured")
        provider = str(args.get("provider") or "all").strip().lower()
        try:
            snapshot = await self.locator.latest_fleet(
                context.org_id,
                provider=provider,
                limit=_clamp_limit(args.get("limit"), default=20, maximum=100),
            )
        except ValueError as exc:
            raise ToolValidationError(str(exc)) from exc
        return {
            "success": True,
            "count": len(snapshot.vehicles),
            "vehicles": [vehicle.model_dump(mode="json", exclude_none=True) for vehicle in snapshot.vehicles],
            "duration_ms": snapshot.duration_ms,
        }

    async def execute(self, name: str, args: Any, context: ToolContext) -> Dict[str, Any]:
        """Run one catalogue operation; failures come back as `{"error": ...}`."""
        if isinstance(args, str):
            try:
                args = json.loads(args or "{}")
            except json.JSONDecodeError:
                return {"error": f"Arguments for {name} were not valid JSON"}
        if not isinstance(args, dict):
            return {"error": f"Arguments for {name} must be a JSON object"}

        handler = getattr(self, f"_tool_{name}", None) if name in self.tool_names() else None
        if handler is None:
            return {"error": f"Unknown tool: {name}"}

        try:
            return await handler(args, context)
        except ToolValidationError as exc:
            return {"error": str(exc)}
        except DispatchStoreError as exc:
            logger.error("Dispatch tool store failure", tool=name, org_id=context.org_id, error=str(exc))
            return {"error": f"The dispatch database rejected the {name} request. Please try again."}
        except Exception as exc:
            logger.error("Dispatch tool crashed", tool=name, org_id=context.org_id, error=str(exc))
            return {"error": f"Unexpected error while running {name}."}
