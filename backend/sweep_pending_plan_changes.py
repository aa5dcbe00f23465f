"""
Finish scheduled downgrades that never got a Stripe subscription schedule

Run periodically: python -m backend.sweep_pending_plan_changes

For each profile whose scheduled change is marked needs_reconciliation:
- before the effective date, retry creating the subscription schedule
- at or after the effective date, switch the subscription price directly
"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

import stripe

from backend.config import configure_logging, get_settings
from backend.db_models import Profile
from backend.db_operations import _CLEAR_FIELD, find_profiles_needing_reconciliation, update_subscription
from backend.payment_stripe import (
    change_subscription_price,
    create_downgrade_schedule,
    current_price_id,
    first_subscription_item,
    retrieve_subscription,
    stripe_field,
)
from backend.plan_catalog import PlanCatalog, build_plan_catalog
from backend.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


async def _reconcile_profile(profile: Profile, catalog: PlanCatalog, now: datetime) -> str:
    """Returns the outcome: "scheduled", "applied" or "skipped" """
    record = profile.subscription
    pending = record.scheduled_plan_change
    if pending is None or not pending.needs_reconciliation or not record.subscription_id:
        return "skipped"

    subscription = retrieve_subscription(record.subscription_id)
    price_id = current_price_id(subscription)

    if price_id == pending.new_price_id:
        # Stripe already bills the new plan, only the profile is behind
        await update_subscription(profile, plan=pending.new_plan_name, scheduled_plan_change=_CLEAR_FIELD)
        return "applied"

    if pending.new_price_id not in catalog:
        logger.warning(
            "⚠️ User %s has a scheduled change to unknown price %s, leaving it for support",
            profile.user_id, pending.new_price_id,
        )
        return "skipped"

    if now < ensure_utc(pending.effective_date):
        schedule_id = create_downgrade_schedule(
            record.subscription_id, price_id, pending.new_price_id, pending.effective_date
        )
        await update_subscription(
            profile,
            scheduled_plan_change=pending.model_copy(
                update={"billing_schedule_id": schedule_id, "needs_reconciliation": False}
            ),
        )
        logger.info("✅ Created schedule %s for user %s", schedule_id, profile.user_id)
        return "scheduled"

    item = first_subscription_item(subscription)
    change_subscription_price(
        record.subscription_id, stripe_field(item, "id"), pending.new_price_id, proration_behavior="none"
    )
    await update_subscription(profile, plan=pending.new_plan_name, scheduled_plan_change=_CLEAR_FIELD)
    logger.info("✅ Applied overdue downgrade to %s for user %s", pending.new_plan_name, profile.user_id)
    return "applied"


async def sweep_pending_plan_changes(catalog: PlanCatalog, now: Optional[datetime] = None) -> Dict[str, int]:
    """Resolve every scheduled change still waiting for reconciliation

    Failures are logged per profile and the sweep moves on.

    Returns:
        dict: counts of checked / scheduled / applied / skipped / failed profiles
    """
    now = ensure_utc(now) if now else utcnow()
    summary = {"checked": 0, "scheduled": 0, "applied": 0, "skipped": 0, "failed": 0}

    profiles = await find_profiles_needing_reconciliation()
    logger.info("🔍 Found %s profiles with scheduled changes needing reconciliation", len(profiles))

    for profile in profiles:
        summary["checked"] += 1
        try:
            outcome = await _reconcile_profile(profile, catalog, now)
        except stripe.StripeError as e:
            logger.error("❌ Stripe error for user %s: %s", profile.user_id, e)
            summary["failed"] += 1
            continue
        except Exception:
            logger.exception("❌ Error reconciling user %s", profile.user_id)
            summary["failed"] += 1
            continue
        summary[outcome] += 1

    logger.info("✅ Sweep finished: %s", summary)
    return summary


if __name__ == "__main__":
    settings = get_settings()
    configure_logging(settings.log_level)
    asyncio.run(sweep_pending_plan_changes(build_plan_catalog(settings)))
