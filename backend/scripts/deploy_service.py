#!/usr/bin/env python3
"""Prepare a SampleTrack database for a new deployment.

Creates the schema (when it does not exist yet) and registers every team
listed in LAB_TEAMS as a shipment location.

Usage:
  python backend/scripts/deploy_service.py
  python backend/scripts/deploy_service.py --skip-schema --pretty
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Add backend/ to import path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import get_settings
from core.logging_config import configure_logging
from db import models  # noqa: F401  (registers the tables on Base.metadata)
from db.session import Base
from integrations.ecrf import get_ecrf_client
from supply_chain.locations import populate_locations


async def _deploy(args: argparse.Namespace) -> dict[str, Any]:
    settings = get_settings()
    engine = create_async_engine(settings.database_url)

    try:
        if not args.skip_schema:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with session_factory() as db, get_ecrf_client(settings) as client:
            logs = await populate_locations(db, client, settings)

        return {
            "schema_created": not args.skip_schema,
            "teams": len(settings.lab_teams),
            "locations": logs,
        }
    finally:
        await engine.dispose()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create the SampleTrack schema and populate shipment locations")
    parser.add_argument("--skip-schema", action="store_true", help="Only populate locations")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    result = asyncio.run(_deploy(args))
    if args.pretty:
        print(json.dumps(result, indent=2, sort_keys=True))
    else:
        print(json.dumps(result))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
