"""Tests for taskflow_api.services.billing_service.BillingService."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest
from taskflow_sync.state.repository import BillingRecordRepository
from taskflow_sync.state.tables import BillingPlan

from taskflow_api.services.billing_service import BillingAccountNotFound, BillingService, WorkspaceNotFound


async def _seed_record(session, *, status: str = "active", plan: str = "business") -> None:
    await BillingRecordRepository(session).upsert_by_subscription(
        workspace_id="ws-1",
        customer_id="cus_1",
        subscription_id="sub_1",
        plan=plan,
        status=status,
        current_period_start=datetime(2026, 3, 1, tzinfo=UTC),
        current_period_end=datetime(2026, 4, 1, tzinfo=UTC),
        cancel_at_period_end=False,
    )


class TestPriceIdFor:
    def test_paid_plans(self, db_session, settings) -> None:
        service = BillingService(db_session, settings, workspace_id="ws-1")

        assert service.price_id_for(BillingPlan.PRO) == "price_pro"
        assert service.price_id_for(BillingPlan.BUSINESS) == "price_business"

    def test_free_plan_has_no_price(self, db_session, settings) -> None:
        service = BillingService(db_session, settings, workspace_id="ws-1")

        with pytest.raises(ValueError, match="Invalid plan"):
            service.price_id_for(BillingPlan.FREE)


class TestSubscriptionInfo:
    @pytest.mark.asyncio
    async def test_active_record(self, db_session, settings) -> None:
        await _seed_record(db_session)
        service = BillingService(db_session, settings, workspace_id="ws-1")

        info = await service.get_subscription_info()

        assert info["plan"] == "business"
        assert info["status"] == "active"
        assert info["current_period_start"] == "2026-03-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_canceled_record_reports_free_plan(self, db_session, settings) -> None:
        await _seed_record(db_session, status="canceled")
        service = BillingService(db_session, settings, workspace_id="ws-1")

        info = await service.get_subscription_info()

        assert info["plan"] == "free"
        assert info["status"] == "canceled"
        assert info["subscription_id"] == "sub_1"


class TestCheckoutSession:
    @pytest.mark.asyncio
    async def test_existing_customer_and_workspace_metadata(self, db_session, settings) -> None:
        await _seed_record(db_session)
        service = BillingService(db_session, settings, workspace_id="ws-1")
        stripe = MagicMock()
        stripe.checkout.Session.create.return_value = {"url": "https://checkout.stripe.test/c/cs_1"}

        with patch.object(service, "_get_stripe", return_value=stripe):
            result = await service.create_checkout_session(BillingPlan.PRO, customer_email="ignored@acme.test")

        assert result == {"checkout_url": "https://checkout.stripe.test/c/cs_1"}
        params = stripe.checkout.Session.create.call_args.kwargs
        assert params["mode"] == "subscription"
        assert params["customer"] == "cus_1"
        assert "customer_email" not in params
        assert params["client_reference_id"] == "ws-1"
        assert params["metadata"] == {"workspace_id": "ws-1"}
        assert params["subscription_data"] == {"metadata": {"workspace_id": "ws-1"}}
        assert params["success_url"] == "https://app.taskflow.test/dashboard?session_id={CHECKOUT_SESSION_ID}"
        assert params["cancel_url"] == "https://app.taskflow.test/#pricing"

    @pytest.mark.asyncio
    async def test_unknown_workspace(self, db_session, settings) -> None:
        service = BillingService(db_session, settings, workspace_id="ws-ghost")
        stripe = MagicMock()

        with patch.object(service, "_get_stripe", return_value=stripe):
            with pytest.raises(WorkspaceNotFound):
                await service.create_checkout_session(BillingPlan.PRO)

        stripe.checkout.Session.create.assert_not_called()


class TestPortalSession:
    @pytest.mark.asyncio
    async def test_custom_return_url(self, db_session, settings) -> None:
        await _seed_record(db_session)
        service = BillingService(db_session, settings, workspace_id="ws-1")
        stripe = MagicMock()
        stripe.billing_portal.Session.create.return_value = {"url": "https://billing.stripe.test/p/1"}

        with patch.object(service, "_get_stripe", return_value=stripe):
            result = await service.create_portal_session(return_url="https://app.taskflow.test/settings")

        assert result == {"url": "https://billing.stripe.test/p/1"}
        stripe.billing_portal.Session.create.assert_called_once_with(
            customer="cus_1",
            return_url="https://app.taskflow.test/settings",
        )

    @pytest.mark.asyncio
    async def test_no_customer(self, db_session, settings) -> None:
        service = BillingService(db_session, settings, workspace_id="ws-1")

        with pytest.raises(BillingAccountNotFound):
            await service.create_portal_session()
