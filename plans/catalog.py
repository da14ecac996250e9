from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional


DEFAULT_MONTHLY_PRICE = 99700 # minor units, $997.00
DEFAULT_MONTHLY_VIDEO_LIMIT = 30
DEFAULT_BILLING_PERIOD_DAYS = 30


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price_minor: int
    video_limit: int
    stripe_price_id: Optional[str]
    features: List[str] = field(default_factory=list)


PLANS: Dict[str, Plan] = {
    "monthly": Plan(
        id="monthly",
        name="Monthly Plan",
        price_minor=int(os.getenv("STRIPE_MONTHLY_PRICE", DEFAULT_MONTHLY_PRICE)),
        video_limit=DEFAULT_MONTHLY_VIDEO_LIMIT,
        stripe_price_id=os.getenv("STRIPE_MONTHLY_PRICE_ID") or os.getenv("STRIPE_PRICE_ID") or "price_monthly",
        features=[
            "30 videos per month",
            "Unlimited photo avatars",
            "Unlimited video avatars",
            "Unlimited custom voices",
            "Monthly renewal",
        ],
    ),
}

DEFAULT_PLAN_ID = "monthly"


def get_plan(plan_id: Optional[str]) -> Optional[Plan]:
    if not plan_id:
        return None
    return PLANS.get(plan_id)


def plan_for_price(price_id: Optional[str]) -> Optional[Plan]:
    if not price_id:
        return None
    for plan in PLANS.values():
        if plan.stripe_price_id == price_id:
            return plan
    return None
