#!/usr/bin/env python3
"""
Create status records for vehicles that predate status tracking.
Every active vehicle without a record gets one (AVAILABLE, version 0) plus its
creation event. Safe to run repeatedly. Works with both SQLite and PostgreSQL.
"""

import sys
import os

# Add parent directory to path to import fleetstatus modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fleetstatus.db import engine, Base, SessionLocal
from fleetstatus.config import settings
from fleetstatus.services.aggregation_cache import AggregationCache
from fleetstatus.services.fleet_directory import FleetDirectory
from fleetstatus.services.query_service import QueryService


def run_backfill(db=None):
    """Register every unregistered active vehicle. Returns the number created."""
    print(f"Connecting to database: {settings.database_url.split('@')[-1] if '@' in settings.database_url else settings.database_url}")

    owns_session = db is None
    if owns_session:
        Base.metadata.create_all(bind=engine)
        db = SessionLocal()

    try:
        vehicles = FleetDirectory().unregistered(db)
        if not vehicles:
            print("All vehicles already have a status record. Nothing to do.")
            return 0

        print(f"Registering {len(vehicles)} vehicle(s)...")
        created = QueryService(db, AggregationCache()).sync_statuses()
    finally:
        if owns_session:
            db.close()

    print(f"Backfill completed successfully! {created} status record(s) created.")
    return created


if __name__ == "__main__":
    try:
        run_backfill()
    except Exception as e:
        print(f"Error running backfill: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
