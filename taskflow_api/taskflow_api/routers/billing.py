"""Billing endpoints: Stripe webhooks, checkout, customer portal, subscription."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field
from taskflow_sync.state.tables import BillingPlan

from taskflow_api.config import APISettings
from taskflow_api.dependencies import ReconcilerDep, SessionDep, SettingsDep
from taskflow_api.services.billing_reconciler import SignatureInvalid, TransientStoreError
from taskflow_api.services.billing_service import BillingAccountNotFound, BillingService, WorkspaceNotFound

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class CheckoutRequest(BaseModel):
    """Request body for ``POST /billing/checkout``."""

    workspace_id: str = Field(..., min_length=1)
    plan: BillingPlan = Field(..., description="Paid plan to subscribe to: 'pro' or 'business'.")
    email: str | None = Field(default=None, description="Pre-fills the Stripe Checkout form.")


class CheckoutResponse(BaseModel):
    checkout_url: str


class PortalRequest(BaseModel):
    """Request body for ``POST /billing/portal``."""

    workspace_id: str = Field(..., min_length=1)
    return_url: str | None = Field(
        default=None,
        description="Where Stripe sends the user after the portal; defaults to the dashboard.",
    )


class PortalResponse(BaseModel):
    url: str


class SubscriptionResponse(BaseModel):
    workspace_id: str
    plan: str
    status: str
    subscription_id: str | None = None
    current_period_start: str | None = None
    current_period_end: str | None = None
    cancel_at_period_end: bool = False
    billing_enabled: bool = True


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@router.post("/webhooks")
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    reconciler: ReconcilerDep,
) -> dict[str, Any]:
    """Handle incoming Stripe webhook events.

    Any 2xx tells Stripe the delivery is done, so unrecognised events and
    events that cannot be attributed to a workspace are acknowledged with
    200.  Signature failures return 400; store failures return 503 so that
    Stripe redelivers later.
    """
    if not settings.billing_enabled:
        return {"status": "billing_disabled"}

    body = await request.body()
    try:
        event = reconciler.verify(body, request.headers.get("stripe-signature"))
    except SignatureInvalid as exc:
        logger.warning("Stripe webhook rejected: %s", exc)
        raise HTTPException(status_code=400, detail="Signature verification failed")

    try:
        outcome = await reconciler.reconcile(event)
    except TransientStoreError as exc:
        logger.error("Stripe event %s (%s) not stored, asking for redelivery: %s", event.id, event.type, exc)
        raise HTTPException(status_code=503, detail="Billing store unavailable; retry later")
    except Exception:
        logger.exception("Stripe event %s (%s) failed", event.id, event.type)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return outcome.model_dump(mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Self-serve billing
# ---------------------------------------------------------------------------


def _require_billing(settings: APISettings) -> None:
    if not settings.billing_enabled:
        raise HTTPException(
            status_code=404,
            detail="Billing is not enabled for this installation.",
        )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    session: SessionDep,
    settings: SettingsDep,
) -> dict[str, str]:
    """Create a Stripe Checkout session for a paid plan.

    Returns a ``checkout_url`` that the frontend should redirect the user to.
    """
    _require_billing(settings)
    if body.plan is BillingPlan.FREE:
        raise HTTPException(status_code=400, detail='Invalid plan. Must be "pro" or "business".')

    service = BillingService(session, settings, workspace_id=body.workspace_id)
    try:
        return await service.create_checkout_session(body.plan, customer_email=body.email)
    except WorkspaceNotFound:
        raise HTTPException(status_code=404, detail="Workspace not found.")


@router.post("/portal", response_model=PortalResponse)
async def create_portal_session(
    body: PortalRequest,
    session: SessionDep,
    settings: SettingsDep,
) -> dict[str, str]:
    """Create a Stripe Customer Portal session for subscription management."""
    _require_billing(settings)
    service = BillingService(session, settings, workspace_id=body.workspace_id)
    try:
        return await service.create_portal_session(return_url=body.return_url)
    except BillingAccountNotFound:
        raise HTTPException(
            status_code=404,
            detail="No billing account found. Please subscribe first.",
        )


@router.get("/workspaces/{workspace_id}/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    workspace_id: str,
    session: SessionDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    """Return the workspace's authoritative subscription, or the free plan."""
    if not settings.billing_enabled:
        return {
            "workspace_id": workspace_id,
            "plan": BillingPlan.FREE.value,
            "status": "active",
            "billing_enabled": False,
        }

    service = BillingService(session, settings, workspace_id=workspace_id)
    info = await service.get_subscription_info()
    info["billing_enabled"] = True
    return info
