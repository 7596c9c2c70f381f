"""API routes for truck location lookups."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from dispatch_copilot.core.auth import FLEET_ROLES, OrgContext, require_roles
from dispatch_copilot.core.logging import logger
from dispatch_copilot.services.runtime import get_vehicle_locator
from dispatch_copilot.services.vehicle_locator import VehicleLocator


router = APIRouter(prefix="/fleet", tags=["fleet"])


@router.get("/locate")
async def locate_truck(
    q: str = Query(..., min_length=1, description="Free text such as 'where is truck 2203'"),
    context: OrgContext = Depends(require_roles(*FLEET_ROLES)),
    locator: VehicleLocator = Depends(get_vehicle_locator),
):
    lookup = await locator.locate_vehicle(q, context.org_id)
    payload = lookup.model_dump(mode="json")
    payload["found"] = lookup.found
    return payload


@router.get("/latest")
async def latest_fleet(
    provider: str = Query(default="all"),
    limit: int = Query(default=20, ge=1, le=100),
    context: OrgContext = Depends(require_roles(*FLEET_ROLES)),
    locator: VehicleLocator = Depends(get_vehicle_locator),
):
    try:
        snapshot = await locator.latest_fleet(context.org_id, provider=provider, limit=limit)
    except ValueError as exc:
        logger.warning("Fleet snapshot rejected", provider=provider, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
    payload = snapshot.model_dump(mode="json")
    payload["count"] = len(snapshot.vehicles)
    return payload
