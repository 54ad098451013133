"""HTTP tests for the billing router (webhooks, checkout, portal, subscription)."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from taskflow_sync.state.repository import BillingRecordRepository, WorkspaceRepository

from taskflow_api.dependencies import get_settings
from taskflow_api.services.billing_reconciler import TransientStoreError
from taskflow_api.services.billing_service import BillingService

_WEBHOOK_URL = "/api/v1/billing/webhooks"


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class TestStripeWebhook:
    @pytest.mark.asyncio
    async def test_signed_event_is_applied(
        self, client, session_factory, make_event, make_subscription, sign, encode
    ) -> None:
        payload = encode(make_event("customer.subscription.created", make_subscription()))

        resp = await client.post(_WEBHOOK_URL, content=payload, headers={"Stripe-Signature": sign(payload)})

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "processed"
        assert body["subscription_id"] == "sub_1"
        assert body["workspace_id"] == "ws-1"
        async with session_factory() as session:
            assert len(await BillingRecordRepository(session).list_for_workspace("ws-1")) == 1

    @pytest.mark.asyncio
    async def test_bad_signature_touches_nothing(
        self, client, reconciler, session_factory, make_event, make_subscription, sign, encode
    ) -> None:
        payload = encode(make_event("customer.subscription.created", make_subscription()))
        header = sign(payload, secret="whsec_attacker")

        with patch.object(reconciler, "reconcile", AsyncMock()) as reconcile:
            resp = await client.post(_WEBHOOK_URL, content=payload, headers={"Stripe-Signature": header})

        assert resp.status_code == 400
        reconcile.assert_not_awaited()
        async with session_factory() as session:
            assert await BillingRecordRepository(session).list_for_workspace("ws-1") == []

    @pytest.mark.asyncio
    async def test_missing_signature_header(self, client, make_event, make_subscription, encode) -> None:
        payload = encode(make_event("customer.subscription.created", make_subscription()))

        resp = await client.post(_WEBHOOK_URL, content=payload)

        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unhandled_event_is_acknowledged(self, client, make_event, sign, encode) -> None:
        payload = encode(make_event("customer.created", {"id": "cus_1"}))

        resp = await client.post(_WEBHOOK_URL, content=payload, headers={"Stripe-Signature": sign(payload)})

        assert resp.status_code == 200
        assert resp.json()["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_unattributable_event_is_acknowledged(
        self, client, make_event, make_subscription, sign, encode
    ) -> None:
        payload = encode(make_event("customer.subscription.created", make_subscription(workspace_id=None)))

        resp = await client.post(_WEBHOOK_URL, content=payload, headers={"Stripe-Signature": sign(payload)})

        assert resp.status_code == 200
        assert resp.json()["status"] == "dropped"
        assert resp.json()["reason"] == "unresolved_workspace"

    @pytest.mark.asyncio
    async def test_store_failure_asks_for_redelivery(
        self, client, reconciler, make_event, make_subscription, sign, encode
    ) -> None:
        payload = encode(make_event("customer.subscription.created", make_subscription()))

        with patch.object(reconciler, "reconcile", AsyncMock(side_effect=TransientStoreError("db down"))):
            resp = await client.post(_WEBHOOK_URL, content=payload, headers={"Stripe-Signature": sign(payload)})

        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_500(
        self, client, reconciler, make_event, make_subscription, sign, encode
    ) -> None:
        payload = encode(make_event("customer.subscription.created", make_subscription()))

        with patch.object(reconciler, "reconcile", AsyncMock(side_effect=RuntimeError("bug"))):
            resp = await client.post(_WEBHOOK_URL, content=payload, headers={"Stripe-Signature": sign(payload)})

        assert resp.status_code == 500

    @pytest.mark.asyncio
    async def test_billing_disabled(self, app, client, settings, encode, make_event) -> None:
        app.dependency_overrides[get_settings] = lambda: settings.model_copy(update={"billing_enabled": False})
        payload = encode(make_event("customer.created", {"id": "cus_1"}))

        resp = await client.post(_WEBHOOK_URL, content=payload)

        assert resp.status_code == 200
        assert resp.json() == {"status": "billing_disabled"}


# ---------------------------------------------------------------------------
# Checkout and portal
# ---------------------------------------------------------------------------


def _stripe_sessions() -> MagicMock:
    stripe = MagicMock()
    stripe.checkout.Session.create.return_value = {"url": "https://checkout.stripe.test/c/cs_1"}
    stripe.billing_portal.Session.create.return_value = {"url": "https://billing.stripe.test/p/bps_1"}
    return stripe


class TestCheckoutAndPortal:
    @pytest.mark.asyncio
    async def test_checkout_returns_url(self, client) -> None:
        stripe = _stripe_sessions()

        with patch.object(BillingService, "_get_stripe", return_value=stripe):
            resp = await client.post(
                "/api/v1/billing/checkout",
                json={"workspace_id": "ws-1", "plan": "business", "email": "owner@acme.test"},
            )

        assert resp.status_code == 200
        assert resp.json() == {"checkout_url": "https://checkout.stripe.test/c/cs_1"}
        params = stripe.checkout.Session.create.call_args.kwargs
        assert params["line_items"] == [{"price": "price_business", "quantity": 1}]
        assert params["customer_email"] == "owner@acme.test"

    @pytest.mark.asyncio
    async def test_checkout_for_unknown_workspace(self, client) -> None:
        stripe = _stripe_sessions()

        with patch.object(BillingService, "_get_stripe", return_value=stripe):
            resp = await client.post("/api/v1/billing/checkout", json={"workspace_id": "ws-ghost", "plan": "pro"})

        assert resp.status_code == 404
        assert resp.json()["detail"] == "Workspace not found."
        stripe.checkout.Session.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_checkout_rejects_free_plan(self, client) -> None:
        resp = await client.post("/api/v1/billing/checkout", json={"workspace_id": "ws-1", "plan": "free"})

        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_checkout_without_price_configured(self, app, client, settings) -> None:
        app.dependency_overrides[get_settings] = lambda: settings.model_copy(update={"stripe_price_id_pro": ""})

        resp = await client.post("/api/v1/billing/checkout", json={"workspace_id": "ws-1", "plan": "pro"})

        assert resp.status_code == 400
        assert "No Stripe price ID configured" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_checkout_when_billing_disabled(self, app, client, settings) -> None:
        app.dependency_overrides[get_settings] = lambda: settings.model_copy(update={"billing_enabled": False})

        resp = await client.post("/api/v1/billing/checkout", json={"workspace_id": "ws-1", "plan": "pro"})

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_portal_for_mapped_workspace(self, client, session_factory) -> None:
        async with session_factory() as session:
            await WorkspaceRepository(session).attach_customer("ws-1", "cus_1")
            await session.commit()
        stripe = _stripe_sessions()

        with patch.object(BillingService, "_get_stripe", return_value=stripe):
            resp = await client.post("/api/v1/billing/portal", json={"workspace_id": "ws-1"})

        assert resp.status_code == 200
        assert resp.json() == {"url": "https://billing.stripe.test/p/bps_1"}
        stripe.billing_portal.Session.create.assert_called_once_with(
            customer="cus_1",
            return_url="https://app.taskflow.test/dashboard",
        )

    @pytest.mark.asyncio
    async def test_portal_without_customer(self, client) -> None:
        resp = await client.post("/api/v1/billing/portal", json={"workspace_id": "ws-unknown"})

        assert resp.status_code == 404
        assert resp.json()["detail"] == "No billing account found. Please subscribe first."


# ---------------------------------------------------------------------------
# Subscription read
# ---------------------------------------------------------------------------


class TestGetSubscription:
    @pytest.mark.asyncio
    async def test_never_subscribed_is_free(self, client) -> None:
        resp = await client.get("/api/v1/billing/workspaces/ws-1/subscription")

        assert resp.status_code == 200
        body = resp.json()
        assert body["plan"] == "free"
        assert body["status"] == "active"
        assert body["billing_enabled"] is True

    @pytest.mark.asyncio
    async def test_reports_reconciled_subscription(
        self, client, make_event, make_subscription, sign, encode
    ) -> None:
        payload = encode(make_event("customer.subscription.created", make_subscription(price_id="price_business")))
        await client.post(_WEBHOOK_URL, content=payload, headers={"Stripe-Signature": sign(payload)})

        resp = await client.get("/api/v1/billing/workspaces/ws-1/subscription")

        body = resp.json()
        assert body["plan"] == "business"
        assert body["subscription_id"] == "sub_1"
        assert body["current_period_end"].startswith("2026-04-01T00:00:00")

    @pytest.mark.asyncio
    async def test_billing_disabled_reports_free(self, app, client, settings) -> None:
        app.dependency_overrides[get_settings] = lambda: settings.model_copy(update={"billing_enabled": False})

        resp = await client.get("/api/v1/billing/workspaces/ws-1/subscription")

        assert resp.json()["billing_enabled"] is False
        assert resp.json()["plan"] == "free"
