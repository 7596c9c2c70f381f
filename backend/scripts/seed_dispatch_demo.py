#!/usr/bin/env python3
"""Seed a demo organization with loads, drivers, and truck positions from all three feeds."""

from __future__ import annotations

import argparse
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
import random
import sys

from faker import Faker

# Ensure `dispatch_copilot` package is importable when script is run directly.
CURRENT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = CURRENT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dispatch_copilot.core.config import get_settings
from dispatch_copilot.core.logging import configure_logging, logger
from dispatch_copilot.models.dispatch import DriverStatus, LoadStatus
from dispatch_copilot.services.dispatch_store import DispatchStore


LANES = [
    ("Sacramento, CA", "Reno, NV", 132),
    ("Stockton, CA", "Phoenix, AZ", 740),
    ("Fresno, CA", "Salt Lake City, UT", 790),
    ("Oakland, CA", "Portland, OR", 635),
    ("Bakersfield, CA", "Las Vegas, NV", 285),
    ("Modesto, CA", "Boise, ID", 560),
]
SHIPPERS = ["Sierra Foods", "Delta Paper Co", "Golden State Steel", "Valley Produce", "Pacific Lumber"]
EQUIPMENT = ["dry van", "reefer", "flatbed"]
DRIVERS = [
    ("Maria Lopez", "Based in Sacramento, prefers NV runs"),
    ("John Carter", "Stockton yard, hazmat endorsed"),
    ("Darnell Price", "Fresno, reefer experience"),
    ("Aisha Khan", "Oakland, flatbed certified"),
    ("Tom Becker", "Modesto, team runs only"),
]
# Real Central Valley and Reno coordinates so reverse geocoding returns sensible towns.
POSITIONS = [
    (38.5816, -121.4944),
    (38.7296, -120.7985),
    (37.9577, -121.2908),
    (36.7378, -119.7871),
    (39.5296, -119.8138),
]


def _iso(moment: datetime) -> str:
    return moment.replace(microsecond=0).isoformat()


def seed_loads(store: DispatchStore, org_id: str, rng: random.Random, fake: Faker, count: int, actor: str) -> int:
    today = date.today()
    statuses = [LoadStatus.AVAILABLE, LoadStatus.AVAILABLE, LoadStatus.IN_TRANSIT, LoadStatus.DELIVERED]
    for index in range(count):
        origin, destination, miles = LANES[index % len(LANES)]
        pickup = today + timedelta(days=rng.randint(0, 5))
        # Load 4404 is the one the demo conversation refers to.
        number = 4404 if index == 0 else rng.randint(1000, 9999)
        store.insert_load(
            org_id,
            {
                "reference": f"LD-{today.year}-{number:04d}",
                "origin": origin,
                "destination": destination,
                "rate": float(rng.randint(9, 40) * 100),
                "pickup_date": pickup.isoformat(),
                "delivery_date": (pickup + timedelta(days=rng.randint(1, 3))).isoformat(),
                "shipper": rng.choice(SHIPPERS),
                "equipment_type": rng.choice(EQUIPMENT),
                "customer_reference": fake.bothify(text="PO-#####"),
                "weight": float(rng.randint(18, 44) * 1000),
                "miles": float(miles),
                "status": (LoadStatus.AVAILABLE if index == 0 else rng.choice(statuses)).value,
            },
            created_by=actor,
        )
    return count


def seed_drivers(store: DispatchStore, org_id: str, fake: Faker, extra: int = 0) -> int:
    today = date.today()
    roster = list(DRIVERS) + [(fake.name(), f"{fake.city()} terminal") for _ in range(max(0, extra))]
    for index, (name, notes) in enumerate(roster):
        store.insert_driver(
            org_id,
            {
                "full_name": name,
                "phone": fake.phone_number(),
                "cdl_class": "A",
                "status": DriverStatus.ACTIVE.value,
                # Every fourth driver has a lapsed medical card.
                "med_exp": (today - timedelta(days=30) if index % 4 == 3 else today + timedelta(days=200)).isoformat(),
                "cdl_exp": (today + timedelta(days=400 + index * 30)).isoformat(),
                "notes": notes,
            },
        )
    return len(roster)


def seed_vehicles(store: DispatchStore, org_id: str, rng: random.Random) -> int:
    now = datetime.now(timezone.utc)
    written = 0
    for index, (lat, lng) in enumerate(POSITIONS[:2]):
        store.upsert_vehicle_row(
            "motive_vehicle_locations_current",
            org_id,
            {
                "motive_vehicle_id": str(880100 + index),
                "vehicle_number": str(2203 + index),
                "name": f"Truck {2203 + index}",
                "license_plate": f"8MTV{index}21",
                "make": "Freightliner",
                "model": "Cascadia",
                "year": 2021,
                "availability_status": "in_service",
                "status": "active",
                "latitude": lat,
                "longitude": lng,
                "heading_degrees": float(rng.randint(0, 359)),
                "speed_mph": float(rng.randint(0, 65)),
                "ignition_on": True,
                "located_at": _iso(now - timedelta(minutes=5 + index)),
                "last_synced_at": _iso(now),
            },
        )
        written += 1

    lat, lng = POSITIONS[2]
    store.upsert_vehicle_row(
        "samsara_vehicles",
        org_id,
        {
            "samsara_vehicle_id": "281474977",
            "name": "SAM-310",
            "license_plate": "7SMS310",
            "license_plate_state": "CA",
            "make": "Volvo",
            "model": "VNL",
            "model_year": 2020,
            "status": "active",
            "is_active": True,
        },
    )
    store.upsert_vehicle_row(
        "samsara_vehicle_locations_current",
        org_id,
        {
            "samsara_vehicle_id": "281474977",
            "latitude": lat,
            "longitude": lng,
            "speed_mph": 54.0,
            "ignition_on": True,
            "located_at": _iso(now - timedelta(minutes=2)),
            "last_synced_at": _iso(now),
        },
    )
    written += 1

    for index, (lat, lng) in enumerate(POSITIONS[3:]):
        vehicle_id = f"00000000-0000-4000-8000-00000000000{index + 1}"
        store.upsert_vehicle_row(
            "simulated_vehicles",
            org_id,
            {
                "id": vehicle_id,
                "name": f"Sim Truck {index + 1}",
                "code": f"SIM-{index + 1:03d}",
                "make": "Kenworth",
                "model": "T680",
                "year": 2019,
                "is_active": True,
            },
        )
        store.upsert_vehicle_row(
            "simulated_vehicle_locations_current",
            org_id,
            {
                "simulated_vehicle_id": vehicle_id,
                "latitude": lat,
                "longitude": lng,
                "speed_mph": float(rng.randint(0, 60)),
                "located_at": _iso(now - timedelta(minutes=15 + index)),
                "last_synced_at": _iso(now),
            },
        )
        written += 1
    return written


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the dispatch store with demo data")
    parser.add_argument("--org-id", default=get_settings().default_org_id)
    parser.add_argument("--user-id", default="demo-dispatcher", help="User added to the organization")
    parser.add_argument("--loads", type=int, default=8)
    parser.add_argument("--extra-drivers", type=int, default=0, help="Additional generated drivers")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--db-path", help="Override DISPATCH_DB_PATH")
    parser.add_argument("--reset", action="store_true", help="Delete existing rows for the organization first")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    store = DispatchStore(args.db_path)
    rng = random.Random(args.seed)
    fake = Faker()
    Faker.seed(args.seed)

    if args.reset:
        store.reset_org(args.org_id)
    store.add_user_to_org(args.user_id, args.org_id)

    loads = seed_loads(store, args.org_id, rng, fake, max(1, args.loads), args.user_id)
    drivers = seed_drivers(store, args.org_id, fake, args.extra_drivers)
    vehicles = seed_vehicles(store, args.org_id, rng)
    logger.info(
        "Dispatch demo seeded",
        org_id=args.org_id,
        db_path=str(store.db_path),
        loads=loads,
        drivers=drivers,
        vehicles=vehicles,
    )
    print(f"Seeded {loads} loads, {drivers} drivers, {vehicles} vehicles into {store.db_path}")
    store.close()


if __name__ == "__main__":
    main()
