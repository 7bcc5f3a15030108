"""Static product catalogue: subscription plans and one-time credit packs.

Stripe product ids come from settings so that test and live catalogues can
differ; credits and tier names live here only.
"""
from dataclasses import dataclass
from typing import Dict, Optional

from songmint.config import Settings, settings as default_settings
from songmint.models import SubscriptionStatus


@dataclass(frozen=True)
class Plan:
    tier: str
    name: str
    credits: int


@dataclass(frozen=True)
class CreditPack:
    key: str
    name: str
    credits: int
    price_cents: int


PLANS_BY_TIER: Dict[str, Plan] = {
    SubscriptionStatus.LITE: Plan(tier=SubscriptionStatus.LITE, name="Lite", credits=5),
    SubscriptionStatus.PLUS: Plan(tier=SubscriptionStatus.PLUS, name="Plus", credits=15),
    SubscriptionStatus.MAX: Plan(tier=SubscriptionStatus.MAX, name="Max", credits=30),
}

CREDIT_PACKS: Dict[str, CreditPack] = {
    "starter": CreditPack(key="starter", name="Starter", credits=3, price_cents=900),
    "creator": CreditPack(key="creator", name="Creator", credits=10, price_cents=1900),
    "pro": CreditPack(key="pro", name="Pro", credits=20, price_cents=2900),
}


class PlanCatalog:
    """Maps Stripe product ids to subscription plans."""

    def __init__(self, settings: Settings = default_settings):
        self._by_product: Dict[str, Plan] = {
            settings.stripe_lite_product_id: PLANS_BY_TIER[SubscriptionStatus.LITE],
            settings.stripe_plus_product_id: PLANS_BY_TIER[SubscriptionStatus.PLUS],
            settings.stripe_max_product_id: PLANS_BY_TIER[SubscriptionStatus.MAX],
        }
        self._product_by_tier = {plan.tier: product_id for product_id, plan in self._by_product.items()}

    def plan_for_product(self, product_id: Optional[str]) -> Optional[Plan]:
        if not product_id:
            return None
        return self._by_product.get(product_id)

    def tier_for_product(self, product_id: Optional[str]) -> str:
        """Tier name for a product; unknown products map to the free tier."""
        plan = self.plan_for_product(product_id)
        return plan.tier if plan else SubscriptionStatus.FREE

    def product_for_tier(self, tier: str) -> Optional[str]:
        return self._product_by_tier.get(tier)


def get_credit_pack(key: str) -> Optional[CreditPack]:
    return CREDIT_PACKS.get(key)
