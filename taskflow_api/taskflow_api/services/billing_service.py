"""Self-serve Stripe billing: checkout, customer portal and subscription reads.

Local billing state is written only by the webhook reconciler; this service
reads it and hands the browser off to Stripe-hosted pages.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from taskflow_sync.state.repository import BillingRecordRepository, WorkspaceRepository
from taskflow_sync.state.tables import BillingPlan, BillingStatus

from taskflow_api.config import APISettings

logger = logging.getLogger(__name__)


class BillingAccountNotFound(LookupError):
    """The workspace has no Stripe customer yet."""


class WorkspaceNotFound(LookupError):
    """No workspace with the given id exists."""


class BillingService:
    """Stripe billing operations for a single workspace.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings containing Stripe configuration.
    workspace_id:
        The workspace performing billing operations.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        workspace_id: str,
    ) -> None:
        self._session = session
        self._settings = settings
        self._workspace_id = workspace_id

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    def price_id_for(self, plan: BillingPlan) -> str:
        """Return the configured Stripe price for a paid *plan*.

        Raises
        ------
        ValueError
            If *plan* is not a paid plan or has no price configured.
        """
        price_map = {
            BillingPlan.PRO: self._settings.stripe_price_id_pro,
            BillingPlan.BUSINESS: self._settings.stripe_price_id_business,
        }
        if plan not in price_map:
            raise ValueError(f"Invalid plan {plan.value!r}. Must be 'pro' or 'business'.")
        price_id = price_map[plan]
        if not price_id:
            raise ValueError(f"No Stripe price ID configured for plan: {plan.value}")
        return price_id

    async def get_subscription_info(self) -> dict[str, Any]:
        """Return the workspace's authoritative subscription.

        Workspaces that never subscribed are on the implicit free plan.
        """
        record = await BillingRecordRepository(self._session).get_authoritative(self._workspace_id)
        if record is None:
            return {
                "workspace_id": self._workspace_id,
                "plan": BillingPlan.FREE.value,
                "status": BillingStatus.ACTIVE.value,
                "subscription_id": None,
                "current_period_start": None,
                "current_period_end": None,
                "cancel_at_period_end": False,
            }

        # A canceled subscription leaves the workspace on the free plan.
        plan = BillingPlan.FREE.value if record.status == BillingStatus.CANCELED.value else record.plan
        return {
            "workspace_id": record.workspace_id,
            "plan": plan,
            "status": record.status,
            "subscription_id": record.external_subscription_id,
            "current_period_start": record.current_period_start.isoformat() if record.current_period_start else None,
            "current_period_end": record.current_period_end.isoformat() if record.current_period_end else None,
            "cancel_at_period_end": record.cancel_at_period_end,
        }

    async def _customer_id(self) -> str | None:
        record = await BillingRecordRepository(self._session).get_authoritative(self._workspace_id)
        if record is not None:
            return record.external_customer_id
        workspace = await WorkspaceRepository(self._session).get(self._workspace_id)
        return workspace.stripe_customer_id if workspace is not None else None

    async def create_checkout_session(
        self,
        plan: BillingPlan,
        customer_email: str | None = None,
    ) -> dict[str, str]:
        """Create a Stripe Checkout session for a new subscription.

        The workspace id travels in the session and subscription metadata so
        the reconciler can attribute the first subscription before any
        customer mapping exists.

        Raises
        ------
        WorkspaceNotFound
            If the workspace does not exist.

        Returns
        -------
        dict
            Contains ``checkout_url`` to redirect the customer to.
        """
        price_id = self.price_id_for(plan)
        if await WorkspaceRepository(self._session).get(self._workspace_id) is None:
            raise WorkspaceNotFound(self._workspace_id)
        app_url = self._settings.app_url.rstrip("/")

        session_params: dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": f"{app_url}/dashboard?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{app_url}/#pricing",
            "allow_promotion_codes": True,
            "client_reference_id": self._workspace_id,
            "metadata": {"workspace_id": self._workspace_id},
            "subscription_data": {"metadata": {"workspace_id": self._workspace_id}},
        }

        customer_id = await self._customer_id()
        if customer_id:
            session_params["customer"] = customer_id
        elif customer_email:
            session_params["customer_email"] = customer_email

        stripe = self._get_stripe()
        checkout_session = await asyncio.to_thread(stripe.checkout.Session.create, **session_params)
        logger.info("Created %s checkout session for workspace %s", plan.value, self._workspace_id)
        return {"checkout_url": checkout_session["url"]}

    async def create_portal_session(self, return_url: str | None = None) -> dict[str, str]:
        """Create a Stripe Customer Portal session.

        Raises
        ------
        BillingAccountNotFound
            If the workspace has no Stripe customer.

        Returns
        -------
        dict
            Contains ``url`` for the portal session.
        """
        customer_id = await self._customer_id()
        if not customer_id:
            raise BillingAccountNotFound(self._workspace_id)

        stripe = self._get_stripe()
        portal_session = await asyncio.to_thread(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url or f"{self._settings.app_url.rstrip('/')}/dashboard",
        )
        return {"url": portal_session["url"]}
