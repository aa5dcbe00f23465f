"""
Subscription billing API
FastAPI routes for plan changes, subscription actions, checkout confirmation,
the dashboard access gate and the Stripe webhook
"""
import logging
import os
from functools import lru_cache
from typing import Awaitable, Optional

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.auth_supabase import User, evaluate_access, get_current_active_user, require_same_user
from backend.config import Settings, configure_logging, get_settings
from backend.db_models import (
    ChangePlanRequest,
    ClearScheduledChangeRequest,
    ConfirmSubscriptionRequest,
    ManageSubscriptionRequest,
)
from backend.db_operations import create_profile_if_not_exists, get_profile
from backend.errors import BillingFlowError
from backend.plan_catalog import PlanCatalog, build_plan_catalog
from backend.plan_change import clear_scheduled_change, resolve_plan_change
from backend.subscription_actions import confirm_subscription, get_subscription_overview, manage_subscription
from backend.webhook_reconciler import WebhookSignatureError, handle_stripe_webhook

logger = logging.getLogger(__name__)

# ========== FastAPI App ==========

app = FastAPI(
    title="Subscription Billing API",
    description="Plan changes, subscription management and Stripe webhook reconciliation",
    version="1.0.0",
)


@app.on_event("startup")
async def startup_event():
    settings = get_settings()
    configure_logging(settings.log_level)
    catalog = get_plan_catalog()
    logger.info("=" * 60)
    logger.info("🚀 FastAPI application starting")
    logger.info("   Downgrade policy: %s", settings.downgrade_policy.value)
    logger.info("   Plans: %s", ", ".join(f"{p.name} (level {p.level})" for p in catalog) or "none configured")
    logger.info("=" * 60)


# Configure CORS
# With allow_credentials=True the origins must be listed explicitly
origins = [
    "http://localhost:5173",      # Vite dev server
    "http://127.0.0.1:5173",
    "http://localhost:3000",
]
extra_origin = os.getenv("FRONTEND_URL")
if extra_origin:
    origins.append(extra_origin)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


# ========== Dependencies ==========

@lru_cache(maxsize=1)
def get_plan_catalog() -> PlanCatalog:
    """Plan table, built once per process from the configured price ids"""
    return build_plan_catalog(get_settings())


def _check_owner(current_user: User, uid: Optional[str]) -> None:
    # A missing uid is reported by the operation itself as a 400
    if uid:
        require_same_user(current_user, uid)


async def _respond(operation: Awaitable[dict]):
    """Await an operation and map its failures to {"error": ...} responses"""
    try:
        return await operation
    except BillingFlowError as e:
        logger.warning("⚠️ Request failed (%s): %s", e.status_code, e.message)
        return JSONResponse(status_code=e.status_code, content=e.to_response())
    except Exception:
        logger.exception("❌ Unexpected error while handling request")
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


# ========== Health / catalog ==========

@app.get("/health")
@app.get("/api/health")  # Support both /health and /api/health
async def health_check(settings: Settings = Depends(get_settings)):
    """Health check endpoint - includes configuration status"""
    env_status = {
        "SUPABASE_URL": bool(settings.supabase_url),
        "SUPABASE_SERVICE_ROLE_KEY": bool(settings.supabase_service_role_key),
        "SUPABASE_ANON_KEY": bool(settings.supabase_anon_key),
        "STRIPE_SECRET_KEY": bool(settings.stripe_secret_key),
        "STRIPE_WEBHOOK_SECRET": bool(settings.stripe_webhook_secret),
    }
    all_configured = all(env_status.values())
    return {
        "status": "healthy" if all_configured else "warning",
        "message": "All environment variables configured" if all_configured else "Some environment variables are missing",
        "environment_variables": env_status,
        "ready": all_configured,
    }


@app.get("/api/plans", tags=["Plan Management"])
async def list_plans(catalog: PlanCatalog = Depends(get_plan_catalog)):
    return {"plans": [plan.to_response() for plan in catalog]}


# ========== Plan changes ==========

@app.post("/api/change-plan", tags=["Plan Management"])
async def change_plan(
    request: ChangePlanRequest,
    current_user: User = Depends(get_current_active_user),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    settings: Settings = Depends(get_settings),
):
    """Upgrade immediately (prorated) or schedule a downgrade for the end of the period"""
    _check_owner(current_user, request.uid)
    return await _respond(
        resolve_plan_change(request.uid, request.newPriceId, catalog, settings.downgrade_policy)
    )


@app.post("/api/clear-scheduled-change", tags=["Plan Management"])
async def clear_scheduled_change_endpoint(
    request: ClearScheduledChangeRequest,
    current_user: User = Depends(get_current_active_user),
):
    _check_owner(current_user, request.uid)
    return await _respond(clear_scheduled_change(request.uid))


# ========== Subscription management ==========

@app.get("/api/manage-subscription", tags=["Subscription"])
async def read_subscription(
    uid: Optional[str] = None,
    current_user: User = Depends(get_current_active_user),
):
    """Subscription state for the account page"""
    _check_owner(current_user, uid)
    return await _respond(get_subscription_overview(uid))


@app.post("/api/manage-subscription", tags=["Subscription"])
async def manage_subscription_endpoint(
    request: ManageSubscriptionRequest,
    current_user: User = Depends(get_current_active_user),
):
    """Cancel at period end, or undo a pending cancellation"""
    _check_owner(current_user, request.uid)
    return await _respond(manage_subscription(request.uid, request.action))


@app.post("/api/confirm-subscription", tags=["Subscription"])
async def confirm_subscription_endpoint(
    request: ConfirmSubscriptionRequest,
    current_user: User = Depends(get_current_active_user),
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    """Link the subscription from a completed checkout to the caller's profile"""
    _check_owner(current_user, request.uid)
    return await _respond(confirm_subscription(request.uid, request.sessionId, catalog))


# ========== Profile / access ==========

@app.post("/api/profile", tags=["Profile"])
async def ensure_profile(current_user: User = Depends(get_current_active_user)):
    async def _create() -> dict:
        profile = await create_profile_if_not_exists(current_user.id, current_user.email or None)
        return {"profile": profile.model_dump(mode="json")}

    return await _respond(_create())


@app.get("/api/access", tags=["Profile"])
async def dashboard_access(
    current_user: User = Depends(get_current_active_user),
    settings: Settings = Depends(get_settings),
):
    """Where the dashboard guard should send the caller"""
    async def _evaluate() -> dict:
        profile = await get_profile(current_user.id)
        decision = evaluate_access(current_user, profile, settings.email_verification_exceptions)
        return {"access": decision.value}

    return await _respond(_evaluate())


# ========== Stripe Webhook ==========

@app.post("/api/webhook", tags=["Webhooks"])
@app.post("/api/webhooks/stripe", tags=["Webhooks"])
async def stripe_webhook(
    request: Request,
    catalog: PlanCatalog = Depends(get_plan_catalog),
    settings: Settings = Depends(get_settings),
):
    """Stripe Webhook Handler with signature verification and profile updates"""
    body = await request.body()
    try:
        return await handle_stripe_webhook(
            body, request.headers.get("stripe-signature"), settings.stripe_webhook_secret, catalog
        )
    except WebhookSignatureError as e:
        logger.warning("❌ Webhook signature verification failed: %s", e.message)
        return JSONResponse(status_code=400, content=e.to_response())
    except Exception:
        # 500 makes Stripe redeliver the event
        logger.exception("❌ Error processing webhook event")
        return JSONResponse(status_code=500, content={"error": "Webhook handler failed"})


# ========== Start service ==========

if __name__ == "__main__":
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", 8000))
    configure_logging(get_settings().log_level)

    logger.info("Service URL: http://%s:%s", host, port)
    logger.info("API Docs: http://%s:%s/docs", host, port)
    logger.info("Tip: Use 'uvicorn backend.main:app --port 8000' from project root")

    uvicorn.run(app, host=host, port=port, reload=False, log_level="info")
