#!/usr/bin/env python3
"""
Database Migration — Create scheduler tables from SQLAlchemy models.

Usage:
    # Create every table (scheduler + CRM clients/templates, for local dev):
    python scripts/migrate_db.py

    # Against a CRM database that already owns clients/templates:
    python scripts/migrate_db.py --jobs-only

    # Check status only (no changes):
    python scripts/migrate_db.py --check

    # Use a different config file:
    python scripts/migrate_db.py --config /etc/caseline/settings.yaml
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

SCHEDULER_TABLES = ("scheduled_jobs", "messages")


async def _list_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text

    # Database-specific table listing
    if dialect == "postgresql":
        result = await conn.execute(text(
            "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
        ))
    elif dialect == "mysql":
        result = await conn.execute(text("SHOW TABLES"))
    else:  # sqlite
        result = await conn.execute(text(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False, jobs_only: bool = False, config_path: str = None):
    from config.settings import load_settings
    load_settings(config_path)

    from database.session import get_engine
    from database.models import Base

    engine = get_engine()
    dialect = engine.dialect.name
    wanted = SCHEDULER_TABLES if jobs_only else tuple(Base.metadata.tables.keys())

    if check_only:
        print(f"Database: {dialect}")
        print(f"URL: {str(engine.url).split('@')[-1] if '@' in str(engine.url) else str(engine.url)}")
        print(f"Tables defined: {', '.join(wanted)}")

        async with engine.connect() as conn:
            existing = await _list_tables(conn, dialect)
        print(f"Tables existing: {', '.join(existing) or '(none)'}")

        missing = set(wanted) - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await engine.dispose()
        return

    print(f"Running database migration ({dialect})...")
    tables = [Base.metadata.tables[name] for name in wanted]
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=tables)

    # Verify
    async with engine.connect() as conn:
        existing = await _list_tables(conn, dialect)
    print(f"Tables created/verified: {', '.join(t for t in wanted if t in existing)}")

    await engine.dispose()
    print("Migration complete. ✓")


def main():
    parser = argparse.ArgumentParser(description="Scheduler database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--jobs-only", action="store_true",
                        help="Only create scheduled_jobs and messages")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check, jobs_only=args.jobs_only,
                              config_path=args.config))


if __name__ == "__main__":
    main()
