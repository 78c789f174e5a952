"""
services/inventory/service.py
Per-blood-group stock counters.
Incremented only by a confirmed donation; there is no decrement path here.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import IntegrityFault
from shared.models.models import BloodGroup, BloodInventory

logger = logging.getLogger(__name__)


async def increment_on_donation(db: AsyncSession, blood_group: BloodGroup) -> None:
    """
    Add one unit to the blood group's row. Does not commit; runs inside the
    caller's completion transaction.
    """
    result = await db.execute(
        update(BloodInventory)
        .where(BloodInventory.blood_group == blood_group)
        .values(
            units_available=BloodInventory.units_available + 1,
            last_updated=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.error(
            f"Inventory integrity fault: {result.rowcount} rows for blood group "
            f"{BloodGroup(blood_group).value}"
        )
        raise IntegrityFault(
            f"No inventory row for blood group {BloodGroup(blood_group).value}"
        )


async def seed_inventory(db: AsyncSession) -> int:
    """Insert a zero-unit row for every missing blood group. Returns rows added."""
    result = await db.execute(select(BloodInventory.blood_group))
    present = set(result.scalars().all())

    missing = [group for group in BloodGroup if group not in present]
    for group in missing:
        db.add(BloodInventory(blood_group=group, units_available=0))

    await db.commit()
    if missing:
        logger.info(f"Seeded {len(missing)} inventory rows")
    return len(missing)


async def list_inventory(db: AsyncSession) -> list[BloodInventory]:
    result = await db.execute(
        select(BloodInventory).execution_options(populate_existing=True)
    )
    rows = {row.blood_group: row for row in result.scalars().all()}
    # Fixed blood-group order, not insertion order
    return [rows[group] for group in BloodGroup if group in rows]
