#!/usr/bin/env python3
"""
Database Migration — create the SongFunnel tables and seed sequence definitions.

Usage:
    # Create/verify tables from config/settings.yaml (or $SONGFUNNEL_CONFIG):
    python scripts/migrate_db.py

    # Also upsert the sequence_definitions listed in the settings file:
    python scripts/migrate_db.py --seed

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run_migration(check_only: bool = False, seed: bool = False, url: str = None) -> dict:
    from sqlalchemy import inspect

    from config.settings import get_settings
    from database.models import Base
    from database.session import close_db, get_engine, init_db

    settings = get_settings()
    engine = get_engine(url)
    defined = sorted(Base.metadata.tables.keys())

    async with engine.connect() as conn:
        existing = sorted(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
    missing = sorted(set(defined) - set(existing))

    shown = str(engine.url)
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {shown.split('@')[-1] if '@' in shown else shown}")
    print(f"Tables defined: {', '.join(defined)}")
    print(f"Tables existing: {', '.join(existing) or '(none)'}")

    report = {"dialect": engine.dialect.name, "missing": missing, "seeded": 0}
    if check_only:
        if missing:
            print(f"Tables MISSING: {', '.join(missing)}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return report

    print("Running database migration...")
    await init_db(url)

    if seed:
        from database.store import SqlStore
        from models.schemas import SequenceDefinition

        store = SqlStore()
        for raw in settings.sequence_definitions:
            await store.upsert_sequence_definition(SequenceDefinition(**raw))
            report["seeded"] += 1
        print(f"Sequence definitions seeded: {report['seeded']}")

    await close_db()
    report["missing"] = []
    print("Migration complete. ✓")
    return report


def main():
    parser = argparse.ArgumentParser(description="SongFunnel database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--seed", action="store_true", help="Upsert sequence definitions from settings")
    parser.add_argument("--url", default=None, help="Database URL (defaults to database.url in settings)")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check, seed=args.seed, url=args.url))


if __name__ == "__main__":
    main()
