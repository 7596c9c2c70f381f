"""Process-wide service instances, built lazily so tests can point them at temp databases."""
from functools import lru_cache

from dispatch_copilot.services.dispatch_assistant import DispatchAssistant
from dispatch_copilot.services.dispatch_store import DispatchStore
from dispatch_copilot.services.dispatch_tools import DispatchToolExecutor
from dispatch_copilot.services.geocoding import ReverseGeocoder
from dispatch_copilot.services.vehicle_locator import VehicleLocator


@lru_cache()
def get_dispatch_store() -> DispatchStore:
    return DispatchStore()


@lru_cache()
def get_vehicle_locator() -> VehicleLocator:
    return VehicleLocator(get_dispatch_store(), geocoder=ReverseGeocoder())


@lru_cache()
def get_tool_executor() -> DispatchToolExecutor:
    return DispatchToolExecutor(get_dispatch_store(), locator=get_vehicle_locator())


@lru_cache()
def get_dispatch_assistant() -> DispatchAssistant:
    return DispatchAssistant(get_dispatch_store(), executor=get_tool_executor())
