"""
Plan change resolver
Decides between reactivate, clear_schedule, immediate prorated upgrade and a
period-end downgrade, then applies the decision to Stripe and the profile
"""
import logging
from typing import Optional

import stripe

from backend.config import DowngradePolicy
from backend.db_models import ChangeType, Profile, ScheduledPlanChange
from backend.db_operations import _CLEAR_FIELD, update_subscription
from backend.errors import DowngradeNotAllowedError, InvalidRequestError, PlanConfigurationError
from backend.payment_stripe import (
    change_subscription_price,
    create_downgrade_schedule,
    current_price_id,
    first_subscription_item,
    release_schedule,
    resolve_period_end,
    retrieve_subscription,
    set_cancel_at_period_end,
    stripe_field,
)
from backend.plan_catalog import PlanCatalog, PlanDescriptor
from backend.subscription_actions import require_profile, require_subscribed_profile

logger = logging.getLogger(__name__)


def _release_pending_schedule(profile: Profile) -> None:
    """Detach the Stripe schedule behind a scheduled change that is about to be superseded"""
    pending = profile.subscription.scheduled_plan_change
    if pending is not None and pending.billing_schedule_id:
        release_schedule(pending.billing_schedule_id)


async def _mark_released_change(profile: Profile, pending: ScheduledPlanChange) -> None:
    """The schedule behind pending is gone but the profile still promises the change"""
    await update_subscription(
        profile,
        scheduled_plan_change=pending.model_copy(update={"billing_schedule_id": None, "needs_reconciliation": True}),
    )
    logger.warning(
        "⚠️ Schedule for user %s was released before a Stripe failure, change to %s marked for reconciliation",
        profile.user_id, pending.new_plan_name,
    )


# ========== Same plan ==========

async def _resolve_same_plan(profile: Profile, subscription) -> dict:
    record = profile.subscription

    if stripe_field(subscription, "cancel_at_period_end", False):
        _release_pending_schedule(profile)
        set_cancel_at_period_end(record.subscription_id, False)
        await update_subscription(
            profile,
            cancel_at_period_end=False,
            canceled_at=_CLEAR_FIELD,
            scheduled_plan_change=_CLEAR_FIELD,
        )
        logger.info("✅ User %s reactivated subscription %s by reselecting their plan", profile.user_id, record.subscription_id)
        return {
            "success": True,
            "changeType": ChangeType.REACTIVATE.value,
            "message": "Your subscription has been reactivated",
        }

    if record.scheduled_plan_change is not None:
        _release_pending_schedule(profile)
        await update_subscription(profile, scheduled_plan_change=_CLEAR_FIELD)
        logger.info(
            "✅ User %s kept their plan, cleared scheduled change to %s",
            profile.user_id, record.scheduled_plan_change.new_plan_name,
        )
        return {
            "success": True,
            "changeType": ChangeType.CLEAR_SCHEDULE.value,
            "message": "Your scheduled plan change has been canceled",
        }

    raise InvalidRequestError("You are already on this plan")


# ========== Different plan ==========

async def _upgrade(profile: Profile, subscription, current: PlanDescriptor, desired: PlanDescriptor) -> dict:
    record = profile.subscription
    item = first_subscription_item(subscription)
    pending = record.scheduled_plan_change
    released = pending is not None and bool(pending.billing_schedule_id) and release_schedule(pending.billing_schedule_id)

    try:
        change_subscription_price(record.subscription_id, stripe_field(item, "id"), desired.plan_id)
    except stripe.StripeError:
        if released:
            await _mark_released_change(profile, pending)
        raise

    await update_subscription(
        profile,
        plan=desired.name,
        cancel_at_period_end=False,
        canceled_at=_CLEAR_FIELD,
        scheduled_plan_change=_CLEAR_FIELD,
    )
    logger.info("✅ User %s upgraded from %s to %s", profile.user_id, current.name, desired.name)
    return {
        "success": True,
        "changeType": ChangeType.UPGRADE.value,
        "message": f"Successfully upgraded from {current.name} to {desired.name}",
        "currentPlan": current.name,
        "newPlan": desired.name,
    }


async def _schedule_downgrade(profile: Profile, subscription, current: PlanDescriptor, desired: PlanDescriptor) -> dict:
    record = profile.subscription
    effective_date = resolve_period_end(subscription)

    pending = record.scheduled_plan_change
    released = pending is not None and bool(pending.billing_schedule_id) and release_schedule(pending.billing_schedule_id)
    if stripe_field(subscription, "cancel_at_period_end", False):
        # A scheduled downgrade is not a cancellation
        try:
            set_cancel_at_period_end(record.subscription_id, False)
        except stripe.StripeError:
            if released:
                await _mark_released_change(profile, pending)
            raise

    schedule_id: Optional[str] = None
    try:
        schedule_id = create_downgrade_schedule(
            record.subscription_id, current.plan_id, desired.plan_id, effective_date
        )
    except stripe.StripeError as e:
        logger.error(
            "❌ Failed to create downgrade schedule for subscription %s, recording it for reconciliation: %s",
            record.subscription_id, e,
        )

    scheduled = ScheduledPlanChange(
        new_plan_name=desired.name,
        new_price_id=desired.plan_id,
        effective_date=effective_date,
        billing_schedule_id=schedule_id,
        needs_reconciliation=schedule_id is None,
    )
    await update_subscription(
        profile,
        cancel_at_period_end=False,
        canceled_at=_CLEAR_FIELD,
        scheduled_plan_change=scheduled,
    )
    logger.info(
        "✅ User %s scheduled downgrade from %s to %s on %s (schedule=%s)",
        profile.user_id, current.name, desired.name, effective_date.isoformat(), schedule_id,
    )

    response = {
        "success": True,
        "changeType": ChangeType.DOWNGRADE.value,
        "message": (
            f"Your plan will change from {current.name} to {desired.name} "
            f"on {effective_date.date().isoformat()}. You keep {current.name} until then."
        ),
        "currentPlan": current.name,
        "newPlan": desired.name,
        "effectiveDate": effective_date.isoformat(),
    }
    if schedule_id:
        response["scheduleId"] = schedule_id
    return response


async def resolve_plan_change(
    user_id: Optional[str],
    desired_plan_id: Optional[str],
    catalog: PlanCatalog,
    policy: DowngradePolicy = DowngradePolicy.SCHEDULE,
) -> dict:
    """Change the user's plan to desired_plan_id

    Args:
        user_id: Profile owner
        desired_plan_id: Stripe price id of the requested plan
        catalog: Plan table used to rank the two plans
        policy: What to do when the requested plan is cheaper

    Returns:
        dict: {success, changeType, message, ...} with currentPlan/newPlan for
              upgrades and downgrades, effectiveDate (and scheduleId when a
              Stripe schedule was created) for downgrades

    Raises:
        InvalidRequestError: missing input, already on this plan
        NotFoundError: unknown user, no profile, no subscription
        PlanConfigurationError: a price id is not in the catalog
        DowngradeNotAllowedError: cheaper plan under the reject policy
        stripe.StripeError: the upgrade call failed; nothing was written unless a
            superseded schedule had already been released
    """
    if not user_id or not desired_plan_id:
        raise InvalidRequestError("Missing uid or newPriceId")

    profile = await require_subscribed_profile(user_id)
    subscription = retrieve_subscription(profile.subscription.subscription_id)
    current_plan_id = current_price_id(subscription)
    if not current_plan_id:
        raise InvalidRequestError("Could not determine current plan")

    if current_plan_id == desired_plan_id:
        return await _resolve_same_plan(profile, subscription)

    current = catalog.lookup(current_plan_id)
    desired = catalog.lookup(desired_plan_id)
    if current is None or desired is None:
        logger.error(
            "❌ Invalid plan configuration: current=%s (%s) new=%s (%s)",
            current_plan_id, "found" if current else "missing",
            desired_plan_id, "found" if desired else "missing",
        )
        raise PlanConfigurationError(
            "Invalid plan configuration",
            debug={
                "currentPriceId": current_plan_id,
                "newPriceId": desired_plan_id,
                "currentPlan": current.name if current else None,
                "newPlan": desired.name if desired else None,
                "availablePlans": catalog.plan_ids(),
            },
        )

    if catalog.is_upgrade(current, desired):
        return await _upgrade(profile, subscription, current, desired)

    if policy == DowngradePolicy.REJECT:
        raise DowngradeNotAllowedError(
            f"Downgrading from {current.name} to {desired.name} is not supported. "
            "Cancel your subscription and subscribe to the new plan once the current period ends."
        )
    return await _schedule_downgrade(profile, subscription, current, desired)


async def clear_scheduled_change(user_id: Optional[str]) -> dict:
    """Drop the user's pending downgrade, releasing its Stripe schedule"""
    if not user_id:
        raise InvalidRequestError("Missing uid")
    profile = await require_profile(user_id)
    pending = profile.subscription.scheduled_plan_change
    if pending is None:
        return {
            "success": True,
            "message": "No scheduled plan change to clear",
            "hadScheduledChange": False,
        }

    _release_pending_schedule(profile)
    await update_subscription(profile, scheduled_plan_change=_CLEAR_FIELD)
    logger.info("✅ Cleared scheduled change to %s for user %s", pending.new_plan_name, user_id)
    return {
        "success": True,
        "message": "Scheduled plan change cleared",
        "hadScheduledChange": True,
        "clearedChange": pending.model_dump(mode="json"),
    }
