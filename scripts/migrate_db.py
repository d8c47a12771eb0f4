#!/usr/bin/env python3
"""
Database Migration — Create the deployment tables from SQLAlchemy models.

Tables: deployment_resources, deployment_access, conversation_handoffs

Usage:
    # Local:
    python scripts/migrate_db.py

    # Alternate config file:
    python scripts/migrate_db.py --config config/prod.yaml

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(conn, dialect: str) -> list[str]:
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


async def run_migration(check_only: bool = False, config_path: str = None) -> int:
    from config.settings import load_settings
    load_settings(config_path)

    from database.session import get_engine
    from database.models import Base

    engine = get_engine()
    dialect = engine.dialect.name
    defined = set(Base.metadata.tables.keys())

    if check_only:
        print(f"Database: {dialect}")
        print(f"URL: {str(engine.url).split('@')[-1] if '@' in str(engine.url) else str(engine.url)}")
        print(f"Tables defined: {', '.join(sorted(defined))}")

        async with engine.connect() as conn:
            existing = await _existing_tables(conn, dialect)
        await engine.dispose()

        print(f"Tables existing: {', '.join(existing) or '(none)'}")
        missing = defined - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
            return 1
        print("All tables exist. ✓")
        return 0

    print("Running database migration...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Verify
    async with engine.connect() as conn:
        existing = await _existing_tables(conn, dialect)
    await engine.dispose()

    print(f"Tables created/verified: {', '.join(sorted(defined & set(existing)))}")
    print("Migration complete. ✓")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, config_path=args.config)))


if __name__ == "__main__":
    main()
