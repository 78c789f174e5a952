"""
services/inventory/router.py
Read-only view of per-blood-group stock for operators.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.inventory.service import list_inventory
from shared.middleware.auth import require_admin
from shared.models.models import User
from shared.schemas.schemas import InventoryResponse

router = APIRouter(prefix="/inventory", tags=["Inventory"])


@router.get("", response_model=list[InventoryResponse])
async def get_inventory(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    rows = await list_inventory(db)
    return [InventoryResponse.model_validate(row) for row in rows]
