"""Public plan catalog."""

import logging
from typing import List

import stripe
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from core.database import get_db
from core.exceptions import ServiceUnavailableError
from schemas.billing import PlanResponse
from services.plan_catalog import PlanCatalogService
from services.stripe_service import StripeService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=List[PlanResponse])
async def list_plans(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Active plans with their prices and trial eligibility."""
    catalog = PlanCatalogService(StripeService(db, settings), settings)
    try:
        return catalog.list_plans()
    except stripe.StripeError as e:
        raise ServiceUnavailableError("Plans are temporarily unavailable") from e
