"""
Shared fixtures: settings environment, a fake plan catalog, an in-memory
profile store, and Stripe-shaped payload builders (plain dicts)
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional
from unittest.mock import patch

import pytest

from backend.auth_supabase import User
from backend.config import get_settings
from backend.db_models import Profile, ScheduledPlanChange, SubscriptionRecord
from backend.db_operations import _build_patch
from backend.plan_catalog import PlanCatalog, PlanDescriptor

STARTER = PlanDescriptor(plan_id="price_starter", name="Starter", level=1, price=4.99)
PLUS = PlanDescriptor(plan_id="price_plus", name="Plus", level=2, price=6.99)
FAMILY_PRO = PlanDescriptor(plan_id="price_family_pro", name="Family Pro", level=3, price=14.99)

PERIOD_END = 1767225600  # 2026-01-01T00:00:00Z
CREATED = 1764547200     # 2025-12-01T00:00:00Z

# Modules that import profile-store functions by name
_STORE_CONSUMERS = {
    "backend.subscription_actions": ("get_profile", "update_subscription"),
    "backend.plan_change": ("update_subscription",),
    "backend.webhook_reconciler": (
        "find_profile_by_customer_id", "find_profile_by_subscription_id", "update_subscription",
    ),
    "backend.sweep_pending_plan_changes": ("find_profiles_needing_reconciliation", "update_subscription"),
}


@pytest.fixture(autouse=True)
def settings_env(monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-role-key")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setenv("STRIPE_PRICE_ID_STARTER", STARTER.plan_id)
    monkeypatch.setenv("STRIPE_PRICE_ID_PLUS", PLUS.plan_id)
    monkeypatch.setenv("STRIPE_PRICE_ID_FAMILY_PRO", FAMILY_PRO.plan_id)
    monkeypatch.delenv("DOWNGRADE_POLICY", raising=False)
    monkeypatch.delenv("EMAIL_VERIFICATION_EXCEPTIONS", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def catalog() -> PlanCatalog:
    return PlanCatalog([FAMILY_PRO, STARTER, PLUS])


class FakeProfileStore:
    """In-memory stand-in for the profiles table

    update_subscription goes through the real patch builder so the None /
    _CLEAR_FIELD conventions behave exactly as against Supabase.
    """

    def __init__(self):
        self.profiles: Dict[str, Profile] = {}
        self.users: Dict[str, User] = {}
        self.writes: List[dict] = []

    def add(self, user_id: str = "user_1", email: str = "user@example.com", **subscription) -> Profile:
        profile = Profile(user_id=user_id, email=email, subscription=SubscriptionRecord(**subscription))
        self.profiles[user_id] = profile
        self.users[user_id] = User(id=user_id, email=email, email_verified=True)
        return profile

    def subscription(self, user_id: str = "user_1") -> SubscriptionRecord:
        return self.profiles[user_id].subscription

    async def get_auth_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        return self.profiles.get(user_id)

    async def _find(self, field: str, value: Optional[str]) -> Optional[Profile]:
        for profile in self.profiles.values():
            if value and getattr(profile.subscription, field) == value:
                return profile
        return None

    async def find_profile_by_customer_id(self, customer_id):
        return await self._find("customer_id", customer_id)

    async def find_profile_by_subscription_id(self, subscription_id):
        return await self._find("subscription_id", subscription_id)

    async def find_profiles_needing_reconciliation(self) -> List[Profile]:
        return [
            p for p in self.profiles.values()
            if p.subscription.scheduled_plan_change is not None
            and p.subscription.scheduled_plan_change.needs_reconciliation
        ]

    async def update_subscription(self, profile: Profile, **changes) -> Profile:
        current = self.profiles[profile.user_id]
        document = current.subscription.model_dump(mode="json")
        document.update(_build_patch(changes))
        document["updated_at"] = "2025-12-15T00:00:00+00:00"
        written = current.model_copy(
            update={"subscription": SubscriptionRecord(**document), "version": current.version + 1}
        )
        self.profiles[profile.user_id] = written
        self.writes.append(changes)
        return written


@pytest.fixture
def store():
    fake = FakeProfileStore()
    patches = [patch("backend.subscription_actions.get_auth_user", new=fake.get_auth_user)]
    for module, names in _STORE_CONSUMERS.items():
        patches.extend(patch(f"{module}.{name}", new=getattr(fake, name)) for name in names)
    for p in patches:
        p.start()
    yield fake
    for p in reversed(patches):
        p.stop()


# ========== Stripe-shaped payloads ==========

def make_subscription(
    price_id: str = STARTER.plan_id,
    subscription_id: str = "sub_123",
    customer_id: str = "cus_123",
    status: str = "active",
    cancel_at_period_end: bool = False,
    current_period_end: Optional[int] = PERIOD_END,
    created: Optional[int] = CREATED,
    canceled_at: Optional[int] = None,
    product_name: Optional[str] = None,
) -> dict:
    price = {
        "id": price_id,
        "unit_amount": 499,
        "currency": "usd",
        "recurring": {"interval": "month"},
        "product": {"id": "prod_123", "name": product_name or "Starter"},
    }
    subscription = {
        "id": subscription_id,
        "customer": customer_id,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "canceled_at": canceled_at,
        "created": created,
        "current_period_start": CREATED,
        "current_period_end": current_period_end,
        "items": {"data": [{"id": "si_123", "price": price}]},
    }
    return subscription


def make_event(event_type: str, obj: dict, created: int = 1765000000, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}}


def scheduled_change(
    plan: PlanDescriptor = STARTER,
    schedule_id: Optional[str] = "sub_sched_1",
    needs_reconciliation: bool = False,
    effective_date: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc),
) -> ScheduledPlanChange:
    return ScheduledPlanChange(
        new_plan_name=plan.name,
        new_price_id=plan.plan_id,
        effective_date=effective_date,
        billing_schedule_id=schedule_id,
        needs_reconciliation=needs_reconciliation,
    )
