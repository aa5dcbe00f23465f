"""
Supabase client configuration
The admin client is created lazily from settings so tests can swap the environment first

⚠️ Important: writes to profiles use the SERVICE_ROLE_KEY client to bypass RLS
"""
import base64
import json
import logging
from typing import Optional

from supabase import Client, create_client

from backend.config import get_settings

logger = logging.getLogger(__name__)

_admin_client: Optional[Client] = None


def _jwt_role(key: str) -> Optional[str]:
    """Read the role claim of a Supabase API key (None when it can't be decoded)"""
    parts = key.split(".")
    if len(parts) < 2:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        return json.loads(base64.urlsafe_b64decode(payload)).get("role")
    except (ValueError, UnicodeDecodeError):
        return None


def get_supabase_admin() -> Client:
    """Get Supabase admin client instance (service role, bypasses RLS)

    Only for backend server-side operations, must never be exposed to the frontend
    """
    global _admin_client
    if _admin_client is None:
        settings = get_settings()
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise Exception("Supabase admin client not initialized. SUPABASE_SERVICE_ROLE_KEY must be set in environment variables.")
        role = _jwt_role(settings.supabase_service_role_key)
        if role is not None and role != "service_role":
            logger.warning(
                "⚠️ SUPABASE_SERVICE_ROLE_KEY has role='%s', not 'service_role'; writes will hit RLS policies", role
            )
        _admin_client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        logger.info("✅ Supabase admin client created")
    return _admin_client


def reset_clients() -> None:
    """Drop the cached client (used after the environment changes)"""
    global _admin_client
    _admin_client = None
