"""
Subscription actions
User-initiated cancel / reactivate, the subscription overview, and linking a
completed checkout to the profile
"""
import logging
from typing import Awaitable, Callable, Dict, Optional

from backend.auth_supabase import get_auth_user
from backend.db_models import Profile, SubscriptionAction
from backend.db_operations import _CLEAR_FIELD, get_profile, update_subscription
from backend.errors import BillingFlowError, InvalidRequestError, NotFoundError
from backend.payment_stripe import (
    describe_price,
    first_subscription_item,
    release_schedule,
    resolve_period_end,
    resolve_period_start,
    resolve_plan_name,
    retrieve_checkout_session,
    retrieve_subscription,
    set_cancel_at_period_end,
    stripe_field,
    stripe_id,
)
from backend.plan_catalog import PlanCatalog
from backend.utils.time import from_unix, isoformat_or_none, utcnow

logger = logging.getLogger(__name__)


async def require_profile(user_id: str) -> Profile:
    """Resolve the caller's identity and load their profile

    Raises:
        NotFoundError: unknown user or no profile
    """
    user = await get_auth_user(user_id)
    if user is None:
        raise NotFoundError("User not found")
    profile = await get_profile(user_id)
    if profile is None:
        raise NotFoundError("User profile not found")
    return profile


async def require_subscribed_profile(user_id: str) -> Profile:
    """Same as require_profile, and the profile must carry a subscription id"""
    profile = await require_profile(user_id)
    if not profile.subscription.subscription_id:
        raise NotFoundError("No active subscription found")
    return profile


# ========== Cancel / reactivate ==========

async def _cancel(profile: Profile) -> dict:
    record = profile.subscription
    changes = {}
    pending = record.scheduled_plan_change
    if pending is not None:
        # Cancelling supersedes a scheduled downgrade; Stripe also refuses to
        # flag a subscription that is still driven by a schedule
        if pending.billing_schedule_id:
            release_schedule(pending.billing_schedule_id)
        changes["scheduled_plan_change"] = _CLEAR_FIELD

    subscription = set_cancel_at_period_end(record.subscription_id, True)
    await update_subscription(profile, cancel_at_period_end=True, canceled_at=utcnow(), **changes)

    logger.info("✅ User %s subscription %s will cancel at period end", profile.user_id, record.subscription_id)
    return {
        "success": True,
        "message": "Subscription will be canceled at the end of the current billing period",
        "subscription": {
            "id": stripe_field(subscription, "id", record.subscription_id),
            "cancelAtPeriodEnd": bool(stripe_field(subscription, "cancel_at_period_end", True)),
            "periodEnd": resolve_period_end(subscription).isoformat(),
        },
    }


async def _reactivate(profile: Profile) -> dict:
    record = profile.subscription
    subscription = set_cancel_at_period_end(record.subscription_id, False)
    await update_subscription(profile, cancel_at_period_end=False, canceled_at=_CLEAR_FIELD)

    logger.info("✅ User %s subscription %s reactivated", profile.user_id, record.subscription_id)
    return {
        "success": True,
        "message": "Subscription has been reactivated",
        "subscription": {
            "id": stripe_field(subscription, "id", record.subscription_id),
            "cancelAtPeriodEnd": bool(stripe_field(subscription, "cancel_at_period_end", False)),
        },
    }


_ACTION_HANDLERS: Dict[SubscriptionAction, Callable[[Profile], Awaitable[dict]]] = {
    SubscriptionAction.CANCEL: _cancel,
    SubscriptionAction.REACTIVATE: _reactivate,
}


async def manage_subscription(user_id: Optional[str], action: Optional[str]) -> dict:
    """Toggle auto-renewal on the user's subscription

    Args:
        user_id: Profile owner
        action: "cancel" or "reactivate"

    Raises:
        InvalidRequestError: missing input or unknown action
        NotFoundError: see require_subscribed_profile
    """
    if not user_id or not action:
        raise InvalidRequestError("Missing uid or action")
    try:
        parsed = SubscriptionAction(action)
    except ValueError:
        raise InvalidRequestError('Invalid action. Use "cancel" or "reactivate"')

    profile = await require_subscribed_profile(user_id)
    return await _ACTION_HANDLERS[parsed](profile)


# ========== Read subscription state ==========

async def get_subscription_overview(user_id: Optional[str]) -> dict:
    """Subscription state for the account page

    A profile without a subscription is not an error: the caller gets
    hasSubscription=False and redirects to the subscribe page.
    """
    if not user_id:
        raise InvalidRequestError("Missing user ID")
    profile = await require_profile(user_id)
    record = profile.subscription
    if not record.subscription_id:
        return {"subscription": None, "plan": None, "hasSubscription": False}

    subscription = retrieve_subscription(record.subscription_id)
    now = utcnow()
    created = stripe_field(subscription, "created")
    pending = record.scheduled_plan_change

    return {
        "subscription": {
            "id": stripe_field(subscription, "id"),
            "status": stripe_field(subscription, "status"),
            "currentPeriodStart": resolve_period_start(subscription, now).isoformat(),
            "currentPeriodEnd": resolve_period_end(subscription, now).isoformat(),
            "cancelAtPeriodEnd": bool(stripe_field(subscription, "cancel_at_period_end", False)),
            "canceledAt": isoformat_or_none(from_unix(stripe_field(subscription, "canceled_at"))),
            "created": (from_unix(created) if created is not None else now).isoformat(),
            "scheduledPlanChange": pending.model_dump(mode="json") if pending else None,
        },
        "plan": describe_price(subscription),
        "hasSubscription": True,
    }


# ========== Checkout confirmation ==========

async def confirm_subscription(user_id: Optional[str], session_id: Optional[str], catalog: PlanCatalog) -> dict:
    """Link the subscription created by a completed checkout session to the profile"""
    if not user_id or not session_id:
        raise InvalidRequestError("Missing sessionId or uid")
    profile = await require_profile(user_id)

    session = retrieve_checkout_session(session_id)
    owner = stripe_field(session, "client_reference_id") or stripe_field(stripe_field(session, "metadata"), "user_id")
    if owner and owner != user_id:
        raise BillingFlowError("Checkout session does not belong to this user", status_code=403)

    subscription = stripe_field(session, "subscription")
    if not subscription:
        logger.error("❌ No subscription found in checkout session %s", session_id)
        raise InvalidRequestError("No subscription found in session")
    if isinstance(subscription, str):
        subscription = retrieve_subscription(subscription)

    price = stripe_field(first_subscription_item(subscription), "price")
    plan_name = resolve_plan_name(stripe_id(price), catalog, price)
    subscription_id = stripe_field(subscription, "id")
    customer_id = stripe_id(stripe_field(subscription, "customer")) or stripe_id(stripe_field(session, "customer"))
    status = stripe_field(subscription, "status")

    await update_subscription(
        profile,
        subscription_id=subscription_id,
        customer_id=customer_id,
        plan=plan_name,
        status=status,
        cancel_at_period_end=bool(stripe_field(subscription, "cancel_at_period_end", False)),
        canceled_at=_CLEAR_FIELD,
        scheduled_plan_change=_CLEAR_FIELD,
    )
    logger.info("✅ Linked subscription %s (%s) to user %s", subscription_id, plan_name, user_id)
    return {
        "plan": plan_name,
        "subscriptionId": subscription_id,
        "status": status,
        "customerId": customer_id,
    }
