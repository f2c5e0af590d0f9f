"""Plan catalog read from Stripe, annotated with trial eligibility."""

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional

import stripe

from core.config import Settings, get_settings
from schemas.billing import PlanResponse, PriceResponse
from services.stripe_service import StripeService, as_dict
from services.trial_config import (
    PlanInfo,
    PriceInfo,
    TrialConfig,
    determine_trial_eligibility_across_plans,
    get_trial_days_for_plan,
)

logger = logging.getLogger(__name__)


def _price_info(price: Dict[str, Any]) -> PriceInfo:
    recurring = price.get("recurring") or {}
    return PriceInfo(
        id=price["id"],
        unit_amount=price.get("unit_amount"),
        currency=price.get("currency"),
        interval=recurring.get("interval"),
        metadata=dict(price.get("metadata") or {}),
    )


class PlanCatalogService:
    def __init__(
        self,
        stripe_service: StripeService,
        settings: Optional[Settings] = None,
        trial_config: Optional[TrialConfig] = None,
    ):
        self.stripe_service = stripe_service
        self.settings = settings or get_settings()
        self.trial_config = trial_config or TrialConfig.from_settings(self.settings)

    def load_plans(self) -> List[PlanInfo]:
        """Active products with their active prices, cheapest first."""
        client = self.stripe_service._get_stripe()
        try:
            products = as_dict(client.Product.list(active=True, limit=100)).get("data") or []
            prices = as_dict(client.Price.list(active=True, limit=100)).get("data") or []
        except stripe.StripeError as e:
            logger.error(f"Stripe error listing plans: {e}")
            raise

        prices_by_product: Dict[str, List[PriceInfo]] = defaultdict(list)
        for price in map(as_dict, prices):
            product_id = price.get("product")
            if not isinstance(product_id, str):
                product_id = as_dict(product_id).get("id")
            prices_by_product[product_id].append(_price_info(price))

        plans = []
        for product in map(as_dict, products):
            plan_prices = sorted(prices_by_product.get(product["id"], []), key=lambda p: p.unit_amount or 0)
            plans.append(PlanInfo(
                id=product["id"],
                name=product.get("name", ""),
                description=product.get("description"),
                metadata=dict(product.get("metadata") or {}),
                prices=plan_prices,
            ))
        return plans

    def list_plans(self) -> List[PlanResponse]:
        plans = self.load_plans()
        eligibility = determine_trial_eligibility_across_plans(plans, self.trial_config)
        return [
            PlanResponse(
                id=plan.id,
                name=plan.name,
                description=plan.description,
                metadata=plan.metadata,
                prices=[
                    PriceResponse(
                        id=p.id,
                        unit_amount=p.unit_amount,
                        currency=p.currency,
                        interval=p.interval,
                    )
                    for p in plan.prices
                ],
                trial_eligible=eligibility.get(plan.id, False),
                trial_days=get_trial_days_for_plan(plan, self.trial_config) if eligibility.get(plan.id) else None,
            )
            for plan in plans
        ]
