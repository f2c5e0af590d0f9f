"""Trial eligibility rules for subscription plans.

Precedence is fixed: product metadata, then price metadata, then the
"lowest monthly price" fallback (only when no plan is explicitly eligible),
then the configured default number of days.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.config import Settings, get_settings

_LEADING_INT = re.compile(r"^\s*(\d+)")


@dataclass
class PriceInfo:
    id: str
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    interval: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlanInfo:
    id: str
    name: str
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    prices: List[PriceInfo] = field(default_factory=list)


@dataclass
class TrialConfig:
    enabled: bool = True
    default_trial_days: int = 14
    check_product_metadata: bool = True
    check_price_metadata: bool = True
    fallback_to_lowest_price: bool = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "TrialConfig":
        settings = settings or get_settings()
        return cls(
            enabled=settings.TRIAL_ENABLED,
            default_trial_days=settings.DEFAULT_TRIAL_DAYS,
            check_product_metadata=settings.TRIAL_CHECK_PRODUCT_METADATA,
            check_price_metadata=settings.TRIAL_CHECK_PRICE_METADATA,
            fallback_to_lowest_price=settings.TRIAL_FALLBACK_TO_LOWEST_PRICE,
        )


def _eligibility_flag(metadata: Optional[Dict[str, Any]]) -> Optional[bool]:
    """``trial_eligible`` as a bool, or None when it is absent or not bool/str."""
    if not metadata:
        return None
    value = metadata.get("trial_eligible")
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() == "true"
    return None


def _positive_days(metadata: Optional[Dict[str, Any]]) -> Optional[int]:
    if not metadata:
        return None
    value = metadata.get("trial_days")
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    if isinstance(value, str):
        match = _LEADING_INT.match(value)
        if match and int(match.group(1)) > 0:
            return int(match.group(1))
    return None


def is_plan_eligible_for_trial(plan: PlanInfo, config: TrialConfig) -> bool:
    if not config.enabled:
        return False

    if config.check_product_metadata:
        flag = _eligibility_flag(plan.metadata)
        if flag is not None:
            return flag

    if config.check_price_metadata:
        for price in plan.prices:
            flag = _eligibility_flag(price.metadata)
            if flag is not None:
                return flag

    # The lowest-price fallback needs every plan; see determine_trial_eligibility_across_plans
    return False


def get_trial_days_for_plan(plan: PlanInfo, config: TrialConfig) -> int:
    days = _positive_days(plan.metadata)
    if days is not None:
        return days
    for price in plan.prices:
        days = _positive_days(price.metadata)
        if days is not None:
            return days
    return config.default_trial_days


def determine_trial_eligibility_across_plans(
    plans: List[PlanInfo], config: TrialConfig
) -> Dict[str, bool]:
    eligibility = {plan.id: is_plan_eligible_for_trial(plan, config) for plan in plans}

    if config.fallback_to_lowest_price and not any(eligibility.values()):
        lowest_amount = None
        lowest_plan_id = None
        for plan in plans:
            monthly = next((p for p in plan.prices if p.interval == "month"), None)
            if monthly and monthly.unit_amount and (
                lowest_amount is None or monthly.unit_amount < lowest_amount
            ):
                lowest_amount = monthly.unit_amount
                lowest_plan_id = plan.id
        if lowest_plan_id is not None:
            eligibility[lowest_plan_id] = True

    return eligibility
