"""
Stripe webhook reconciler
Verifies incoming events and syncs the cached subscription on the profile with
what Stripe reports, including completing scheduled downgrades

Every "nothing to do" outcome (unknown event kind, no matching profile, stale
event) is acknowledged so Stripe doesn't keep redelivering it.
"""
import logging
from enum import Enum
from typing import Any, Optional

import stripe

from backend.db_models import Profile
from backend.db_operations import (
    _CLEAR_FIELD,
    find_profile_by_customer_id,
    find_profile_by_subscription_id,
    update_subscription,
)
from backend.errors import BillingFlowError
from backend.payment_stripe import (
    construct_event,
    first_subscription_item,
    resolve_plan_name,
    stripe_field,
    stripe_id,
)
from backend.plan_catalog import PlanCatalog
from backend.utils.time import from_unix, to_unix

logger = logging.getLogger(__name__)


class WebhookEventKind(str, Enum):
    """Event kinds the reconciler acts on; everything else is acknowledged and ignored"""
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SCHEDULE_UPDATED = "subscription_schedule.updated"
    SCHEDULE_COMPLETED = "subscription_schedule.completed"

    @classmethod
    def parse(cls, event_type: Optional[str]) -> Optional["WebhookEventKind"]:
        try:
            return cls(event_type)
        except ValueError:
            return None


class WebhookSignatureError(BillingFlowError):
    """Missing or invalid stripe-signature, or an unparseable payload"""

    status_code = 400


def verify_event(payload: bytes, signature: Optional[str], secret: Optional[str]):
    """Check the signature over the raw body and return the parsed event

    Raises:
        WebhookSignatureError: nothing is processed for unverified events
    """
    if not signature:
        raise WebhookSignatureError("Missing stripe-signature header")
    if not secret:
        logger.error("❌ STRIPE_WEBHOOK_SECRET not configured, refusing webhook")
        raise WebhookSignatureError("Webhook secret not configured")
    try:
        return construct_event(payload, signature, secret)
    except ValueError as e:
        raise WebhookSignatureError(f"Invalid payload: {e}")
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(f"Invalid signature: {e}")


def _is_stale(profile: Profile, created: Optional[int]) -> bool:
    # Equal timestamps are re-applied so a redelivered event converges to the same state
    last = profile.subscription.last_event_at
    if created is None or last is None:
        return False
    return int(created) < int(last)


# ========== Subscription events ==========

async def handle_subscription_changed(
    subscription: Any,
    created: Optional[int],
    catalog: PlanCatalog,
    deleted: bool = False,
) -> bool:
    """Overwrite the cached plan, status and cancellation fields from the event payload

    Returns:
        bool: True when the profile was written
    """
    subscription_id = stripe_field(subscription, "id")
    customer_id = stripe_id(stripe_field(subscription, "customer"))
    profile = await find_profile_by_customer_id(customer_id)
    if profile is None:
        logger.info("🔍 No profile with customer_id=%s (subscription %s), ignoring", customer_id, subscription_id)
        return False
    tracked_id = profile.subscription.subscription_id
    if tracked_id and tracked_id != subscription_id:
        logger.info(
            "🔍 Subscription %s is not the one recorded for user %s (%s), ignoring",
            subscription_id, profile.user_id, tracked_id,
        )
        return False
    if _is_stale(profile, created):
        logger.info(
            "⚠️ Ignoring stale event for subscription %s: created=%s < last_event_at=%s",
            subscription_id, created, profile.subscription.last_event_at,
        )
        return False

    price = stripe_field(first_subscription_item(subscription), "price")
    plan_name = resolve_plan_name(stripe_id(price), catalog, price)
    canceled_at = from_unix(stripe_field(subscription, "canceled_at"))

    if deleted:
        status = stripe_field(subscription, "status", "canceled")
        cancel_at_period_end = False
    else:
        status = stripe_field(subscription, "status")
        cancel_at_period_end = bool(stripe_field(subscription, "cancel_at_period_end", False))
        if not cancel_at_period_end:
            canceled_at = _CLEAR_FIELD

    pending = profile.subscription.scheduled_plan_change
    clear_pending = pending is not None and (deleted or pending.new_plan_name == plan_name)
    if clear_pending and not deleted:
        logger.info("✅ Scheduled change to %s took effect for user %s", plan_name, profile.user_id)

    await update_subscription(
        profile,
        plan=plan_name,
        status=status,
        cancel_at_period_end=cancel_at_period_end,
        canceled_at=canceled_at,
        scheduled_plan_change=_CLEAR_FIELD if clear_pending else None,
        last_event_at=created,
    )
    logger.info(
        "✅ Synced subscription %s for user %s: plan=%s status=%s cancel_at_period_end=%s",
        subscription_id, profile.user_id, plan_name, status, cancel_at_period_end,
    )
    return True


# ========== Subscription schedule events ==========

def _phase_reached(schedule: Any, effective_at: int) -> bool:
    if stripe_field(schedule, "status") == "completed":
        return True
    start_date = stripe_field(stripe_field(schedule, "current_phase"), "start_date")
    return start_date is not None and int(start_date) >= effective_at


async def handle_schedule_event(schedule: Any, created: Optional[int]) -> bool:
    """Complete the profile's scheduled downgrade once Stripe has moved to the new phase

    Returns:
        bool: True when the profile was written
    """
    schedule_id = stripe_field(schedule, "id")
    # A released schedule keeps the subscription id under released_subscription
    subscription_id = stripe_id(stripe_field(schedule, "subscription") or stripe_field(schedule, "released_subscription"))
    profile = await find_profile_by_subscription_id(subscription_id)
    if profile is None:
        logger.info("🔍 No profile with subscription_id=%s (schedule %s), ignoring", subscription_id, schedule_id)
        return False
    if _is_stale(profile, created):
        logger.info("⚠️ Ignoring stale event for schedule %s", schedule_id)
        return False

    pending = profile.subscription.scheduled_plan_change
    if pending is None or pending.billing_schedule_id != schedule_id:
        logger.info("🔍 Schedule %s is not the one recorded for user %s, ignoring", schedule_id, profile.user_id)
        return False
    if not _phase_reached(schedule, to_unix(pending.effective_date)):
        logger.info("🔍 Schedule %s has not reached the new phase yet", schedule_id)
        return False

    await update_subscription(
        profile,
        plan=pending.new_plan_name,
        scheduled_plan_change=_CLEAR_FIELD,
        last_event_at=created,
    )
    logger.info("✅ Completed scheduled downgrade to %s for user %s", pending.new_plan_name, profile.user_id)
    return True


# ========== Entry points ==========

async def dispatch_event(event: Any, catalog: PlanCatalog) -> None:
    event_type = stripe_field(event, "type", "unknown")
    event_id = stripe_field(event, "id", "unknown")
    created = stripe_field(event, "created")
    obj = stripe_field(stripe_field(event, "data"), "object")

    kind = WebhookEventKind.parse(event_type)
    logger.info("📨 Received webhook event: %s [id: %s]", event_type, event_id)

    if kind is None:
        logger.info("Unhandled event type: %s [id: %s] - acknowledging", event_type, event_id)
        return
    if kind in (WebhookEventKind.SUBSCRIPTION_UPDATED, WebhookEventKind.SUBSCRIPTION_DELETED):
        await handle_subscription_changed(
            obj, created, catalog, deleted=kind == WebhookEventKind.SUBSCRIPTION_DELETED
        )
    else:
        await handle_schedule_event(obj, created)


async def handle_stripe_webhook(
    payload: bytes,
    signature: Optional[str],
    secret: Optional[str],
    catalog: PlanCatalog,
) -> dict:
    """Verify and apply one Stripe event

    Raises:
        WebhookSignatureError: the event could not be authenticated
        Exception: anything raised while applying the event (the route turns it into a 500)
    """
    event = verify_event(payload, signature, secret)
    await dispatch_event(event, catalog)
    return {"received": True}
