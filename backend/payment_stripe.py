"""
Stripe payment integration
Thin wrappers over the Stripe SDK used by the plan-change workflow and the webhook
"""
import logging
from datetime import datetime
from typing import Any, Optional

import stripe

from backend.config import get_settings
from backend.plan_catalog import PlanCatalog
from backend.utils.time import FALLBACK_PERIOD, from_unix, to_unix, utcnow

logger = logging.getLogger(__name__)

# Stripe configuration
stripe.api_key = get_settings().stripe_secret_key

UNKNOWN_PLAN_NAME = "Unknown Plan"
SUBSCRIPTION_EXPAND = ["items.data.price.product"]


def stripe_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a Stripe object, a webhook payload dict, or None

    Handles:
    - plain dicts (webhook payloads, tests)
    - StripeObject (dict-like in most SDK versions, attribute access in newer ones)
    """
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        value = getattr(obj, key, default)
    return default if value is None else value


def stripe_id(obj: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object"""
    if obj is None or isinstance(obj, str):
        return obj
    return stripe_field(obj, "id")


# ========== Subscription reads ==========

def retrieve_subscription(subscription_id: str):
    """Fetch the live subscription with line item prices and products expanded"""
    return stripe.Subscription.retrieve(subscription_id, expand=SUBSCRIPTION_EXPAND)


def first_subscription_item(subscription) -> Optional[Any]:
    items = stripe_field(subscription, "items")
    data = stripe_field(items, "data") or []
    return data[0] if len(data) > 0 else None


def current_price_id(subscription) -> Optional[str]:
    item = first_subscription_item(subscription)
    return stripe_id(stripe_field(item, "price"))


def _period_boundary(subscription, key: str) -> Optional[int]:
    # Newer API versions moved the billing period onto the subscription item
    value = stripe_field(subscription, key)
    if value is None:
        value = stripe_field(first_subscription_item(subscription), key)
    return value


def resolve_period_end(subscription, now: Optional[datetime] = None) -> datetime:
    """When the current billing period ends

    Stripe occasionally returns a subscription without current_period_end; in
    that case fall back to creation time + 30 days, or now + 30 days when the
    creation time is missing too. Never raises on an incomplete payload.
    """
    period_end = _period_boundary(subscription, "current_period_end")
    if period_end is not None:
        return from_unix(period_end)

    created = stripe_field(subscription, "created")
    base = from_unix(created) if created is not None else (now or utcnow())
    fallback = base + FALLBACK_PERIOD
    logger.error(
        "❌ Missing current_period_end from Stripe subscription %s, using fallback %s",
        stripe_field(subscription, "id"), fallback.isoformat(),
    )
    return fallback


def resolve_period_start(subscription, now: Optional[datetime] = None) -> datetime:
    period_start = _period_boundary(subscription, "current_period_start")
    if period_start is not None and _period_boundary(subscription, "current_period_end") is not None:
        return from_unix(period_start)
    created = stripe_field(subscription, "created")
    return from_unix(created) if created is not None else (now or utcnow())


def describe_price(subscription) -> dict:
    """Plan details shown next to the subscription (product name, amount, interval)"""
    price = stripe_field(first_subscription_item(subscription), "price")
    if price is not None and isinstance(price, str):
        price = stripe.Price.retrieve(price, expand=["product"])
    product = stripe_field(price, "product")
    if isinstance(product, str):
        product = stripe.Product.retrieve(product)
    unit_amount = stripe_field(price, "unit_amount")
    return {
        "name": stripe_field(product, "name", UNKNOWN_PLAN_NAME),
        "amount": unit_amount / 100 if unit_amount else 0,
        "currency": stripe_field(price, "currency", "usd"),
        "interval": stripe_field(stripe_field(price, "recurring"), "interval", "month"),
    }


def resolve_plan_name(price_id: Optional[str], catalog: PlanCatalog, price: Any = None) -> str:
    """Display name for a price: catalog first, then the Stripe product name"""
    plan = catalog.lookup(price_id)
    if plan:
        return plan.name
    if not price_id:
        return UNKNOWN_PLAN_NAME

    product = stripe_field(price, "product") if price is not None and not isinstance(price, str) else None
    if product is None:
        fetched = stripe.Price.retrieve(price_id, expand=["product"])
        product = stripe_field(fetched, "product")
    if isinstance(product, str):
        product = stripe.Product.retrieve(product)

    name = stripe_field(product, "name")
    if not name:
        logger.warning("⚠️ Price %s has no product name, using '%s'", price_id, UNKNOWN_PLAN_NAME)
        return UNKNOWN_PLAN_NAME
    return name


# ========== Subscription mutations ==========

def set_cancel_at_period_end(subscription_id: str, cancel: bool):
    return stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)


def change_subscription_price(
    subscription_id: str,
    item_id: str,
    new_price_id: str,
    proration_behavior: str = "create_prorations",
):
    """Swap the subscription's line item to a new price

    An upgrade supersedes a pending cancellation, so the flag is cleared in the
    same call.
    """
    return stripe.Subscription.modify(
        subscription_id,
        items=[{"id": item_id, "price": new_price_id}],
        proration_behavior=proration_behavior,
        cancel_at_period_end=False,
    )


def create_downgrade_schedule(
    subscription_id: str,
    current_price_id: str,
    new_price_id: str,
    effective_date: datetime,
) -> str:
    """Schedule a switch to new_price_id at effective_date

    Phase 1 keeps the current price until effective_date, phase 2 moves to the
    new price and, once released, the subscription simply continues on it.

    Returns:
        str: the subscription schedule id
    """
    schedule = stripe.SubscriptionSchedule.create(from_subscription=subscription_id)
    schedule_id = stripe_field(schedule, "id")

    current_phase = stripe_field(schedule, "current_phase")
    phases = stripe_field(schedule, "phases") or []
    start_date = stripe_field(current_phase, "start_date")
    if start_date is None and phases:
        start_date = stripe_field(phases[0], "start_date")

    first_phase = {
        "items": [{"price": current_price_id, "quantity": 1}],
        "end_date": to_unix(effective_date),
    }
    if start_date is not None:
        first_phase["start_date"] = start_date

    try:
        stripe.SubscriptionSchedule.modify(
            schedule_id,
            end_behavior="release",
            phases=[
                first_phase,
                {"items": [{"price": new_price_id, "quantity": 1}]},
            ],
            metadata={"purpose": "scheduled_downgrade", "new_price_id": new_price_id},
        )
    except stripe.StripeError:
        # Don't leave a half-configured schedule attached to the subscription
        try:
            stripe.SubscriptionSchedule.release(schedule_id)
        except stripe.StripeError as release_error:
            logger.error("❌ Failed to release half-configured schedule %s: %s", schedule_id, release_error)
        raise

    return schedule_id


def release_schedule(schedule_id: str) -> bool:
    """Detach a subscription schedule, leaving the subscription as it is now

    Best effort: returns False (and logs) when Stripe refuses, e.g. because the
    schedule already completed or was released.
    """
    try:
        stripe.SubscriptionSchedule.release(schedule_id)
        logger.info("✅ Released subscription schedule %s", schedule_id)
        return True
    except stripe.StripeError as e:
        logger.warning("⚠️ Failed to release subscription schedule %s: %s", schedule_id, e)
        return False


# ========== Webhooks / checkout ==========

def construct_event(payload: bytes, signature: str, secret: str):
    """Verify the signature over the raw payload and parse the event

    Raises:
        ValueError: payload is not valid JSON
        stripe.SignatureVerificationError: signature does not match
    """
    return stripe.Webhook.construct_event(payload, signature, secret)


def retrieve_checkout_session(session_id: str):
    return stripe.checkout.Session.retrieve(
        session_id,
        expand=["subscription", "subscription.items.data.price.product"],
    )
