"""Tests for load and driver reference resolution."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dispatch_copilot.models.dispatch import EntityKind, EntityReference, ResolutionStatus  # noqa: E402
from dispatch_copilot.services.dispatch_store import DispatchStore  # noqa: E402
from dispatch_copilot.services.entity_resolution import EntityResolver  # noqa: E402
from dispatch_copilot.services.vehicle_locator import VehicleLocator  # noqa: E402


ORG = "org-resolve"


@pytest.fixture
def store(tmp_path):
    instance = DispatchStore(str(tmp_path / "resolve.db"))
    instance.insert_load(ORG, {"reference": "LD-2025-4404", "origin": "Sacramento, CA", "destination": "Reno, NV"})
    instance.insert_driver(ORG, {"full_name": "Maria Lopez"})
    yield instance
    instance.close()


@pytest.mark.parametrize("typed", ["4404", "load 4404", "LD-2025-4404", "ld-2025-4404", "  4404  "])
def test_load_reference_variants_resolve_to_the_same_load(store, typed):
    resolution = EntityResolver(store).resolve_load(typed, ORG)
    assert resolution.status == ResolutionStatus.UNIQUE
    assert resolution.record["reference"] == "LD-2025-4404"


def test_digits_retry_is_only_used_after_substring_miss(store):
    resolver = EntityResolver(store)
    assert resolver.resolve_load("4404", ORG).stage == "substring"
    digits = resolver.resolve_load("load #4404", ORG)
    assert digits.stage == "digits"
    assert digits.reference == "load #4404"


def test_unknown_and_empty_references_are_not_found(store):
    resolver = EntityResolver(store)
    assert resolver.resolve_load("9999", ORG).status == ResolutionStatus.NOT_FOUND
    assert resolver.resolve_load("", ORG).status == ResolutionStatus.NOT_FOUND
    assert resolver.resolve_driver(None, ORG).status == ResolutionStatus.NOT_FOUND


def test_resolution_never_crosses_organizations(store):
    assert EntityResolver(store).resolve_load("4404", "org-elsewhere").status == ResolutionStatus.NOT_FOUND


def test_resolution_is_idempotent(store):
    resolver = EntityResolver(store)
    first = resolver.resolve_driver("maria", ORG)
    second = resolver.resolve_driver("maria", ORG)
    assert first.status == second.status == ResolutionStatus.UNIQUE
    assert first.record["id"] == second.record["id"]


def test_two_matching_drivers_are_ambiguous(store):
    store.insert_driver(ORG, {"full_name": "Maria Chen"})
    resolution = EntityResolver(store).resolve_driver("Maria", ORG)

    assert resolution.is_ambiguous
    assert resolution.record is None
    assert {row["full_name"] for row in resolution.candidates} == {"Maria Lopez", "Maria Chen"}


def test_exact_match_wins_over_longer_substring_matches(store):
    store.insert_load(ORG, {"reference": "LD-2025-44045"})
    resolver = EntityResolver(store)

    exact = resolver.resolve_load("LD-2025-4404", ORG)
    assert exact.is_unique
    assert exact.record["reference"] == "LD-2025-4404"
    assert resolver.resolve_load("4404", ORG).is_ambiguous


def test_candidates_are_capped(store):
    for index in range(8):
        store.insert_driver(ORG, {"full_name": f"Sam Driver {index}"})
    resolution = EntityResolver(store).resolve_driver("Sam", ORG)
    assert resolution.is_ambiguous
    assert len(resolution.candidates) == 5


def test_vehicle_kind_goes_through_the_locator(store):
    store.upsert_vehicle_row(
        "motive_vehicle_locations_current",
        ORG,
        {"motive_vehicle_id": "880100", "vehicle_number": "2203", "located_at": "2025-06-01T10:00:00+00:00"},
    )
    resolver = EntityResolver(store, vehicle_locator=VehicleLocator(store))

    found = asyncio.run(resolver.resolve(EntityKind.VEHICLE, "truck 2203", ORG))
    assert found.is_unique
    assert found.record["vehicle_id"] == "880100"
    assert found.stage == "motive"

    missing = asyncio.run(resolver.resolve(EntityKind.VEHICLE, "truck 9999", ORG))
    assert missing.status == ResolutionStatus.NOT_FOUND

    load = asyncio.run(resolver.resolve_reference(EntityReference(kind=EntityKind.LOAD, raw="4404"), ORG))
    assert load.record["reference"] == "LD-2025-4404"
