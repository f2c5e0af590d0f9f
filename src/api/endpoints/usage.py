"""Usage for the current billing period."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.security import get_current_user
from schemas.billing import UsageResponse
from services.usage_service import UsageService

router = APIRouter()


@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user),
):
    return await UsageService(db).get_current_usage(current_user.id)
