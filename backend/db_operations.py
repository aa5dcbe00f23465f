"""
Database operations
Reads and writes of the profiles table (one row per user, subscription kept as a JSON document)

Writes to the subscription document are compare-and-swap on profiles.version:
the caller passes the profile it read, only the fields it names are changed,
and if somebody else wrote in between the row is re-read and the same field
changes are applied to the fresh document.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from backend.db_models import Profile, ScheduledPlanChange, SubscriptionRecord
from backend.db_supabase import get_supabase_admin
from backend.errors import ConcurrentUpdateError, NotFoundError
from backend.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
MAX_CAS_ATTEMPTS = 3

# Sentinel value for explicitly clearing fields in update_subscription
# None means "don't update this field", _CLEAR_FIELD means "set this field to NULL"
_CLEAR_FIELD = object()

_SUBSCRIPTION_FIELDS = frozenset(SubscriptionRecord.model_fields) - {"updated_at"}


def normalize_profile_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Make a raw row safe to feed into Profile (older rows may lack fields)"""
    data = dict(data)
    subscription = data.get("subscription")
    if isinstance(subscription, str):
        # Some PostgREST setups hand jsonb back as text
        subscription = json.loads(subscription) if subscription else None
    if not isinstance(subscription, dict):
        subscription = {}
    data["subscription"] = subscription
    if data.get("version") is None:
        data["version"] = 0
    return data


def _to_profile(row: Dict[str, Any]) -> Profile:
    return Profile(**normalize_profile_data(row))


def _first_row(response) -> Optional[Dict[str, Any]]:
    if response is None or not getattr(response, "data", None):
        return None
    data = response.data
    if isinstance(data, list):
        return data[0] if data else None
    return data


# ========== Profile reads ==========

async def get_profile(user_id: str) -> Optional[Profile]:
    """Get a profile by user id, None when the user has no profile yet"""
    supabase = get_supabase_admin()
    # Direct query instead of maybe_single() to avoid 406 errors on empty results
    response = supabase.table(PROFILES_TABLE).select("*").eq("user_id", user_id).execute()
    row = _first_row(response)
    return _to_profile(row) if row else None


async def _find_profile_by(column: str, value: Optional[str]) -> Optional[Profile]:
    if not value:
        return None
    supabase = get_supabase_admin()
    response = supabase.table(PROFILES_TABLE).select("*").eq(column, value).limit(2).execute()
    rows = response.data if response and response.data else []
    if not rows:
        return None
    if len(rows) > 1:
        logger.warning("⚠️ More than one profile matches %s=%s, acting on the first (user_id=%s)", column, value, rows[0].get("user_id"))
    return _to_profile(rows[0])


async def find_profile_by_customer_id(customer_id: Optional[str]) -> Optional[Profile]:
    return await _find_profile_by("subscription->>customer_id", customer_id)


async def find_profile_by_subscription_id(subscription_id: Optional[str]) -> Optional[Profile]:
    return await _find_profile_by("subscription->>subscription_id", subscription_id)


async def find_profiles_needing_reconciliation() -> List[Profile]:
    """Profiles whose scheduled downgrade has no Stripe schedule behind it"""
    supabase = get_supabase_admin()
    response = (
        supabase.table(PROFILES_TABLE)
        .select("*")
        .eq("subscription->scheduled_plan_change->>needs_reconciliation", "true")
        .execute()
    )
    rows = response.data if response and response.data else []
    return [_to_profile(row) for row in rows]


# ========== Profile writes ==========

async def create_profile_if_not_exists(user_id: str, email: Optional[str] = None) -> Profile:
    """Create a profile with an empty subscription record, or return the existing one"""
    existing = await get_profile(user_id)
    if existing:
        logger.info("✅ Profile already exists for user %s", user_id)
        return existing

    supabase = get_supabase_admin()
    now = utcnow().isoformat()
    row = {
        "user_id": user_id,
        "email": email,
        "created_at": now,
        "updated_at": now,
        "version": 0,
        "subscription": SubscriptionRecord().model_dump(mode="json"),
    }
    # ignore_duplicates keeps a concurrently created row intact
    response = supabase.table(PROFILES_TABLE).upsert(row, on_conflict="user_id", ignore_duplicates=True).execute()
    created = _first_row(response)
    if created is None:
        # Lost the race against another insert, read back what is there
        profile = await get_profile(user_id)
        if profile is None:
            raise Exception(f"Failed to create profile for user {user_id}: database returned no data")
        return profile

    logger.info("✅ Created new profile for user %s (%s)", user_id, email)
    return _to_profile(created)


def _serialize_value(value: Any) -> Any:
    if value is _CLEAR_FIELD:
        return None
    if isinstance(value, ScheduledPlanChange):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    return value


def _build_patch(changes: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(changes) - _SUBSCRIPTION_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")
    return {field: _serialize_value(value) for field, value in changes.items() if value is not None}


async def update_subscription(profile: Profile, **changes: Any) -> Profile:
    """Apply field changes to a profile's subscription document

    Args:
        profile: Profile as read by the caller (its version is the CAS token)
        **changes: SubscriptionRecord fields. None means "leave as is",
                   _CLEAR_FIELD means "set to null". updated_at is always stamped.

    Returns:
        Profile: the profile as written

    Raises:
        NotFoundError: the profile disappeared while retrying
        ConcurrentUpdateError: the row kept changing for MAX_CAS_ATTEMPTS attempts
    """
    patch = _build_patch(changes)
    supabase = get_supabase_admin()
    current = profile

    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        now = utcnow().isoformat()
        document = current.subscription.model_dump(mode="json")
        document.update(patch)
        document["updated_at"] = now

        response = (
            supabase.table(PROFILES_TABLE)
            .update({
                "subscription": document,
                "version": current.version + 1,
                "updated_at": now,
            })
            .eq("user_id", current.user_id)
            .eq("version", current.version)
            .execute()
        )
        written = _first_row(response)
        if written is not None:
            return _to_profile(written)

        logger.warning(
            "⚠️ Profile %s changed since it was read (version %s), retrying update %s/%s",
            current.user_id, current.version, attempt, MAX_CAS_ATTEMPTS,
        )
        fresh = await get_profile(current.user_id)
        if fresh is None:
            raise NotFoundError("User profile not found")
        current = fresh

    raise ConcurrentUpdateError("Profile was modified concurrently, please retry")
