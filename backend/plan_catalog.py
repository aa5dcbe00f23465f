"""
Plan catalog
Ordered table of billing plans, ranked by level (cheapest first)

The catalog is built once at start-up and passed to whoever needs it; nothing
reads plan configuration from the environment at request time.
"""
import logging
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from backend.config import Settings

logger = logging.getLogger(__name__)


class PlanDescriptor(BaseModel):
    """One purchasable plan"""
    model_config = ConfigDict(frozen=True)

    plan_id: str           # Stripe price id
    name: str
    level: int = Field(gt=0)
    price: float = 0.0     # display only, Stripe is the source of truth for amounts

    def to_response(self) -> dict:
        return {"planId": self.plan_id, "name": self.name, "level": self.level, "price": self.price}


class PlanCatalog:
    """Immutable plan table with lookups by price id and by name"""

    def __init__(self, plans: Iterable[PlanDescriptor]):
        ordered = sorted(plans, key=lambda p: p.level)
        by_id: Dict[str, PlanDescriptor] = {}
        levels = set()
        for plan in ordered:
            if plan.plan_id in by_id:
                raise ValueError(f"Duplicate plan id in catalog: {plan.plan_id}")
            if plan.level in levels:
                raise ValueError(f"Duplicate plan level in catalog: {plan.level} ({plan.name})")
            by_id[plan.plan_id] = plan
            levels.add(plan.level)
        self._plans = tuple(ordered)
        self._by_id = by_id
        self._by_name = {plan.name: plan for plan in ordered}

    def __iter__(self):
        return iter(self._plans)

    def __len__(self) -> int:
        return len(self._plans)

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._by_id

    def lookup(self, plan_id: Optional[str]) -> Optional[PlanDescriptor]:
        if not plan_id:
            return None
        return self._by_id.get(plan_id)

    def by_name(self, name: Optional[str]) -> Optional[PlanDescriptor]:
        if not name:
            return None
        return self._by_name.get(name)

    def plan_ids(self) -> List[str]:
        return [plan.plan_id for plan in self._plans]

    def is_upgrade(self, current: PlanDescriptor, target: PlanDescriptor) -> bool:
        return target.level > current.level


# name, level, display price, settings attribute holding the Stripe price id
DEFAULT_PLANS = (
    ("Starter", 1, 4.99, "price_id_starter"),
    ("Plus", 2, 6.99, "price_id_plus"),
    ("Family Pro", 3, 14.99, "price_id_family_pro"),
)


def build_plan_catalog(settings: Settings) -> PlanCatalog:
    """Build the catalog from configured Stripe price ids

    Plans whose price id is not configured are left out (and logged), so a
    request naming them fails as an invalid plan configuration.
    """
    plans = []
    for name, level, price, attr in DEFAULT_PLANS:
        plan_id = getattr(settings, attr)
        if not plan_id:
            logger.warning("⚠️ No Stripe price id configured for plan '%s' (%s), leaving it out of the catalog", name, attr)
            continue
        plans.append(PlanDescriptor(plan_id=plan_id, name=name, level=level, price=price))
    return PlanCatalog(plans)
