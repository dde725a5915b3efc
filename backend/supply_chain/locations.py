"""
Location directory — labs and clinical sites that send or receive aliquots.

Locations come from two places:
  1. Deploy time: every team listed in `settings.lab_teams` is fetched from
     the eCRF (`team_get`) and upserted with the team's numeric id.
  2. Lazily: the first time an import references an unknown location code.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings
from core.errors import ECRFError, ErrorCode, ServiceError
from db.helpers import upsert_by_key
from db.models import Location
from integrations.ecrf.client import ECRFClient

logger = structlog.get_logger()


async def list_locations(db: AsyncSession, labs_only: bool = True) -> list[Location]:
    query = select(Location)
    if labs_only:
        query = query.where(Location.is_lab.is_(True))
    result = await db.execute(query.order_by(Location.name))
    return list(result.scalars().all())


async def get_location(db: AsyncSession, location_id: int) -> Location | None:
    return await db.get(Location, location_id)


async def find_location_by_code(db: AsyncSession, code: str) -> Location | None:
    result = await db.execute(select(Location).where(Location.code == code))
    return result.scalar_one_or_none()


async def ensure_location(
    db: AsyncSession,
    code: str,
    name: str | None = None,
    is_lab: bool = False,
    is_clinical_site: bool = False,
) -> Location:
    """Return the location with `code`, creating it on first reference."""
    location = await find_location_by_code(db, code)
    if location is not None:
        return location

    location = Location(code=code, name=name or code, is_lab=is_lab, is_clinical_site=is_clinical_site)
    db.add(location)
    await db.flush()
    logger.info("location.created", location_id=location.location_id, code=code)
    return location


async def populate_locations(db: AsyncSession, client: ECRFClient, settings: Settings) -> list[str]:
    """
    Upsert one location per configured lab team.

    A team the eCRF does not know is logged and skipped; a database failure
    aborts the whole run with DB_ERROR. Returns one log line per team.
    """
    logs: list[str] = []
    for team_code, info in settings.lab_teams.items():
        try:
            team = await client.team_get(team_code)
        except ECRFError as exc:
            logger.warning("location.team_lookup_failed", team_code=team_code, error=exc.message)
            logs.append(f"Team {team_code} could not be added to the locations table: {exc.message}")
            continue

        try:
            await upsert_by_key(
                db,
                Location,
                team.team_id,
                {
                    "location_id": team.team_id,
                    "name": team.name,
                    "code": team.code,
                    "is_lab": bool(info.get("is_lab", False)),
                    "is_clinical_site": bool(info.get("is_clinical_site", False)),
                },
            )
        except SQLAlchemyError as exc:
            await db.rollback()
            raise ServiceError(ErrorCode.DB_ERROR, f"Error adding location '{team.name}': {exc}") from exc

        logs.append(f"Team {team_code} added to the locations table")

    await db.commit()
    logger.info("location.populated", teams=len(settings.lab_teams))
    return logs
