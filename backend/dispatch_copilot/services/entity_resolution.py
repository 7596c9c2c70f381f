"""Map operator-typed load, driver, and vehicle references onto stored records."""
from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Optional

from dispatch_copilot.core.logging import logger
from dispatch_copilot.models.dispatch import EntityKind, EntityReference, Resolution, ResolutionStatus
from dispatch_copilot.services.dispatch_store import DispatchStore


MAX_CANDIDATES = 5


class EntityResolver:
    """Substring match first, digits-only retry second, never a silent guess.

    Several rows matching the same pass resolve to a single record only when one
    of them equals the reference exactly; otherwise the caller receives the
    candidates and decides how to disambiguate.
    """

    NON_DIGITS = re.compile(r"[^0-9]")

    def __init__(self, store: DispatchStore, vehicle_locator: Any = None) -> None:
        self.store = store
        self.vehicle_locator = vehicle_locator

    def _finder(self, kind: EntityKind) -> Callable[[str, str], List[Dict[str, Any]]]:
        if kind == EntityKind.LOAD:
            return self.store.find_loads_by_reference
        if kind == EntityKind.DRIVER:
            return self.store.find_drivers_by_name
        raise ValueError(f"Record resolution does not support kind '{kind.value}'")

    @staticmethod
    def _canonical(kind: EntityKind, record: Dict[str, Any]) -> str:
        field = "reference" if kind == EntityKind.LOAD else "full_name"
        return str(record.get(field) or "")

    @staticmethod
    def _candidate_view(kind: EntityKind, record: Dict[str, Any]) -> Dict[str, Any]:
        if kind == EntityKind.LOAD:
            return {
                "id": record.get("id"),
                "reference": record.get("reference"),
                "status": record.get("status"),
                "origin": record.get("origin"),
                "destination": record.get("destination"),
            }
        return {
            "id": record.get("id"),
            "full_name": record.get("full_name"),
            "status": record.get("status"),
        }

    def _pick(
        self,
        kind: EntityKind,
        reference: str,
        rows: List[Dict[str, Any]],
        stage: str,
        matched_text: str,
    ) -> Resolution:
        if len(rows) == 1:
            return Resolution(kind=kind, reference=reference, status=ResolutionStatus.UNIQUE, record=rows[0], stage=stage)

        wanted = matched_text.casefold()
        exact = [row for row in rows if self._canonical(kind, row).casefold() == wanted]
        if len(exact) == 1:
            return Resolution(kind=kind, reference=reference, status=ResolutionStatus.UNIQUE, record=exact[0], stage=stage)

        return Resolution(
            kind=kind,
            reference=reference,
            status=ResolutionStatus.AMBIGUOUS,
            candidates=[self._candidate_view(kind, row) for row in rows[:MAX_CANDIDATES]],
            stage=stage,
        )

    def resolve_record(self, kind: EntityKind, raw_reference: Optional[str], org_id: str) -> Resolution:
        """Resolve a load or driver reference within one organization."""
        reference = str(raw_reference or "").strip()
        if not reference:
            return Resolution(kind=kind, reference=reference, status=ResolutionStatus.NOT_FOUND)

        find = self._finder(kind)
        rows = find(org_id, reference)
        if rows:
            return self._pick(kind, reference, rows, stage="substring", matched_text=reference)

        # "load 4404" against a stored "LD-2025-4404"
        digits = self.NON_DIGITS.sub("", reference)
        if digits and digits != reference:
            rows = find(org_id, digits)
            if rows:
                return self._pick(kind, reference, rows, stage="digits", matched_text=digits)

        logger.info("Reference not resolved", kind=kind.value, reference=reference, org_id=org_id)
        return Resolution(kind=kind, reference=reference, status=ResolutionStatus.NOT_FOUND)

    def resolve_load(self, raw_reference: Optional[str], org_id: str) -> Resolution:
        return self.resolve_record(EntityKind.LOAD, raw_reference, org_id)

    def resolve_driver(self, raw_reference: Optional[str], org_id: str) -> Resolution:
        return self.resolve_record(EntityKind.DRIVER, raw_reference, org_id)

    async def resolve(self, kind: EntityKind, raw_reference: Optional[str], org_id: str) -> Resolution:
        """Resolve any supported kind; vehicles go through the multi-provider locator."""
        if kind != EntityKind.VEHICLE:
            return self.resolve_record(kind, raw_reference, org_id)

        reference = str(raw_reference or "").strip()
        if self.vehicle_locator is None:
            raise ValueError("Vehicle resolution requires a vehicle locator")
        lookup = await self.vehicle_locator.locate_vehicle(reference, org_id)
        if lookup.vehicle is None:
            return Resolution(kind=kind, reference=reference, status=ResolutionStatus.NOT_FOUND)
        return Resolution(
            kind=kind,
            reference=reference,
            status=ResolutionStatus.UNIQUE,
            record=lookup.vehicle.model_dump(mode="json"),
            stage=lookup.vehicle.provider.value,
        )

    async def resolve_reference(self, reference: EntityReference, org_id: str) -> Resolution:
        return await self.resolve(reference.kind, reference.raw, org_id)
