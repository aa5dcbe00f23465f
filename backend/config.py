"""
Application configuration
Everything comes from environment variables; backend/.env is only read outside production
"""
import logging
import os
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

# Only load .env file in development environment (local)
# In production the platform injects the environment directly
is_production = bool(os.getenv("VERCEL")) or os.getenv("ENVIRONMENT") == "production"
if not is_production:
    env_path = Path(__file__).parent.resolve() / ".env"
    # Don't use override, system environment variables win
    if env_path.exists():
        load_dotenv(dotenv_path=str(env_path), override=False)


class DowngradePolicy(str, Enum):
    """How a request for a cheaper plan is handled (one policy per deployment)"""
    SCHEDULE = "schedule"  # two-phase Stripe subscription schedule at period end
    REJECT = "reject"      # refuse; user must cancel and resubscribe


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_anon_key: str = ""

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    price_id_starter: Optional[str] = None
    price_id_plus: Optional[str] = None
    price_id_family_pro: Optional[str] = None

    downgrade_policy: DowngradePolicy = DowngradePolicy.SCHEDULE
    email_verification_exceptions: tuple[str, ...] = ()
    log_level: str = "INFO"


def _split_csv(raw: Optional[str]) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


def load_settings() -> Settings:
    """Read settings from the current environment

    Raises:
        ValueError: DOWNGRADE_POLICY is not one of the known policies
    """
    raw_policy = os.getenv("DOWNGRADE_POLICY", DowngradePolicy.SCHEDULE.value).strip().lower()
    try:
        policy = DowngradePolicy(raw_policy)
    except ValueError:
        raise ValueError(
            f"Invalid DOWNGRADE_POLICY '{raw_policy}', expected one of "
            f"{[p.value for p in DowngradePolicy]}"
        )

    return Settings(
        supabase_url=os.getenv("SUPABASE_URL", ""),
        supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
        supabase_anon_key=os.getenv("SUPABASE_ANON_KEY", ""),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        price_id_starter=os.getenv("STRIPE_PRICE_ID_STARTER") or None,
        price_id_plus=os.getenv("STRIPE_PRICE_ID_PLUS") or None,
        price_id_family_pro=os.getenv("STRIPE_PRICE_ID_FAMILY_PRO") or None,
        downgrade_policy=policy,
        email_verification_exceptions=_split_csv(os.getenv("EMAIL_VERIFICATION_EXCEPTIONS")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
