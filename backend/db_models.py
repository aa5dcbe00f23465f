"""
Database model definitions
Profile record with its embedded subscription document, plus request bodies
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

# Stripe statuses that grant dashboard access
ACTIVE_STATUSES = frozenset({"active", "trialing"})


class ChangeType(str, Enum):
    """Outcome of a plan change request"""
    REACTIVATE = "reactivate"
    CLEAR_SCHEDULE = "clear_schedule"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class SubscriptionAction(str, Enum):
    CANCEL = "cancel"
    REACTIVATE = "reactivate"


class ScheduledPlanChange(BaseModel):
    """A downgrade waiting for the end of the current billing period"""
    new_plan_name: str
    new_price_id: str
    effective_date: datetime
    billing_schedule_id: Optional[str] = None
    # True when the Stripe schedule could not be created and the sweep must finish the job
    needs_reconciliation: bool = False


class SubscriptionRecord(BaseModel):
    """Cached view of the user's Stripe subscription (Stripe stays authoritative)"""
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    plan: Optional[str] = None
    status: Optional[str] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    scheduled_plan_change: Optional[ScheduledPlanChange] = None
    updated_at: Optional[datetime] = None
    last_event_at: Optional[int] = None  # Stripe event.created of the last applied webhook

    @property
    def is_active(self) -> bool:
        return bool(self.subscription_id) and self.status in ACTIVE_STATUSES


class Profile(BaseModel):
    """One row of the profiles table"""
    user_id: str
    email: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0
    subscription: SubscriptionRecord = Field(default_factory=SubscriptionRecord)


# ========== Request bodies ==========

class ChangePlanRequest(BaseModel):
    uid: Optional[str] = None
    newPriceId: Optional[str] = None


class ManageSubscriptionRequest(BaseModel):
    uid: Optional[str] = None
    action: Optional[str] = None


class ClearScheduledChangeRequest(BaseModel):
    uid: Optional[str] = None


class ConfirmSubscriptionRequest(BaseModel):
    uid: Optional[str] = None
    sessionId: Optional[str] = None
