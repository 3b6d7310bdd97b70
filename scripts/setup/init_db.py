# scripts/setup/init_db.py
"""
Initialize database — creates all tables and optionally seeds zone config.
Run once before first launch, or after adding new models.
Usage: python scripts/setup/init_db.py [--zones zones.json]

zones.json is a list of objects with zone_id plus any ZoneConfigUpdate field:
  [{"zone_id": "omaha-1", "horizon_days": 7, "fuzzy_threshold": 0.95,
    "billing_rules": {"hourly_rate": 2.5, "grace_minutes": 15, "daily_max": 30}}]
"""

import sys
import os
import json
import argparse
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from app.database import SessionLocal, create_tables, engine
from app.config import settings
from app.schemas.zone_config import ZoneConfigUpdate
from app.services.zone_config import ZoneConfigProvider
from sqlalchemy import inspect, text


def seed_zones(path: str):
    with open(path) as f:
        entries = json.load(f)
    provider = ZoneConfigProvider(SessionLocal, settings)
    for entry in entries:
        zone_id = entry.pop("zone_id")
        zone = provider.upsert(zone_id, ZoneConfigUpdate(**entry))
        print(f"   ✓ {zone.zone_id}: horizon={zone.horizon_days}d threshold={zone.fuzzy_threshold} "
              f"max_stay={zone.max_stay_hours}h rate={zone.billing_rules.hourly_rate}")


def main():
    parser = argparse.ArgumentParser(description="Create tables and seed zone config")
    parser.add_argument("--zones", help="JSON file with zone config entries")
    args = parser.parse_args()

    print("🗄️  LPR Sessions DB Initialization")
    print("=" * 40)
    print(f"📡 Database: {settings.DATABASE_URL}")

    # Test connection
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("✅ Database connection OK")
    except Exception as e:
        print(f"❌ Cannot connect to database: {e}")
        print("\nMake sure PostgreSQL is running:")
        print("  docker-compose up -d db")
        print("  # or: sudo systemctl start postgresql")
        sys.exit(1)

    # Create all tables
    print("\n📋 Creating tables...")
    create_tables()
    tables = sorted(inspect(engine).get_table_names())
    print(f"\n📊 Tables in database ({len(tables)} total):")
    for t in tables:
        print(f"   ✓ {t}")

    if args.zones:
        print(f"\n🗺️  Seeding zone config from {args.zones}...")
        seed_zones(args.zones)

    print("\n🎉 Database ready! You can now start the backend:")
    print("   uvicorn app.main:app --host 0.0.0.0 --port 8080 --reload")


if __name__ == "__main__":
    main()
