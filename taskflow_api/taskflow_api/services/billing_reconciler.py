"""Stripe webhook reconciliation into local billing records.

Stripe delivers webhooks at least once, in no guaranteed order, and retries
any delivery that is not acknowledged with a 2xx.  The reconciler keeps
``billing_records`` a correct projection of the Stripe subscription
lifecycle under those conditions:

* :meth:`BillingReconciler.verify` is the only admission gate.  It checks the
  ``Stripe-Signature`` header before anything in the payload is looked at.
* :meth:`BillingReconciler.reconcile` maps the verified event to at most one
  write.  Subscription-shaped events perform a full idempotent upsert;
  cancellation and payment-failure events only touch ``status`` (and the
  cancel flag) so a late delivery cannot roll period dates back.
* Ordering policy is last write wins by arrival.  ``last_event_id`` is kept
  for diagnostics only.

Deliveries for the same Stripe customer are serialised in-process by a
striped lock, and the write itself is a single ``INSERT .. ON CONFLICT``
on the subscription id, so concurrent redeliveries converge on one row.
"""

from __future__ import annotations

import asyncio
import json
import logging
import zlib
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from taskflow_sync.state.repository import BillingRecordRepository, WorkspaceRepository
from taskflow_sync.state.tables import BillingPlan, BillingStatus

from taskflow_api.config import APISettings
from taskflow_api.services.workspace_resolver import DatabaseWorkspaceResolver, WorkspaceResolver

logger = logging.getLogger(__name__)

_LOCK_STRIPES = 64

# Plan granted when a price id matches no configured plan.  The lowest paid
# tier, so a legitimate purchase is never lost to configuration drift.
UNKNOWN_PRICE_PLAN = BillingPlan.PRO

# Status used when Stripe reports something this table does not know.
UNKNOWN_STATUS = BillingStatus.ACTIVE

_STATUS_MAP: dict[str, BillingStatus] = {
    "active": BillingStatus.ACTIVE,
    "trialing": BillingStatus.TRIALING,
    "past_due": BillingStatus.PAST_DUE,
    "canceled": BillingStatus.CANCELED,
    "unpaid": BillingStatus.CANCELED,
    "incomplete_expired": BillingStatus.CANCELED,
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class BillingError(Exception):
    """Base class for webhook reconciliation failures."""


class SignatureInvalid(BillingError):
    """Missing or bad signature, or a payload that is not a Stripe event."""


class UnresolvedWorkspace(BillingError):
    """No workspace could be attributed to a new subscription."""

    def __init__(self, customer_id: str, subscription_id: str) -> None:
        super().__init__(f"No workspace for customer {customer_id!r} (subscription {subscription_id!r})")
        self.customer_id = customer_id
        self.subscription_id = subscription_id


class TransientStoreError(BillingError):
    """The billing store write failed; the delivery should be retried."""


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class VerifiedEvent(BaseModel):
    """A Stripe event that passed signature verification."""

    id: str
    type: str
    created: int | None = None
    livemode: bool = False
    data_object: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, doc: Any) -> VerifiedEvent:
        if not isinstance(doc, dict):
            raise ValueError("Stripe event must be a JSON object")
        data = doc.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
            raise ValueError("Stripe event has no data.object")
        return cls(
            id=doc.get("id"),
            type=doc.get("type"),
            created=doc.get("created"),
            livemode=bool(doc.get("livemode", False)),
            data_object=data["object"],
        )


class SubscriptionSnapshot(BaseModel):
    """The fields of a Stripe subscription the billing record mirrors."""

    id: str
    customer: str
    status: str = ""
    price_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> SubscriptionSnapshot:
        """Build a snapshot from a Stripe subscription object.

        Period dates live on the first subscription item in current API
        versions and on the subscription itself in older ones.
        """
        items = (obj.get("items") or {}).get("data") or []
        first: Mapping[str, Any] = items[0] if items else {}
        price = first.get("price")
        price_id = price.get("id") if isinstance(price, Mapping) else price

        return cls(
            id=obj["id"],
            customer=_object_id(obj.get("customer")) or "",
            status=obj.get("status") or "",
            price_id=price_id or None,
            current_period_start=_timestamp(first.get("current_period_start") or obj.get("current_period_start")),
            current_period_end=_timestamp(first.get("current_period_end") or obj.get("current_period_end")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
            metadata=dict(obj.get("metadata") or {}),
        )


class ReconcileStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    DROPPED = "dropped"


class ReconcileOutcome(BaseModel):
    """What a delivery did.  Returned to Stripe as the webhook response body."""

    status: ReconcileStatus
    event_id: str
    event_type: str
    subscription_id: str | None = None
    workspace_id: str | None = None
    reason: str | None = None


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


def plan_for_price(price_id: str | None, settings: APISettings) -> BillingPlan:
    """Map a Stripe price id to a plan.

    No price means the free plan.  An unrecognised price maps to
    :data:`UNKNOWN_PRICE_PLAN` instead of failing.
    """
    if not price_id:
        return BillingPlan.FREE
    if price_id == settings.stripe_price_id_pro:
        return BillingPlan.PRO
    if price_id == settings.stripe_price_id_business:
        return BillingPlan.BUSINESS
    logger.warning("Unknown Stripe price %s; defaulting to plan %s", price_id, UNKNOWN_PRICE_PLAN.value)
    return UNKNOWN_PRICE_PLAN


def normalize_status(raw_status: str | None) -> BillingStatus:
    """Collapse a Stripe subscription status into the local status enum."""
    status = _STATUS_MAP.get(raw_status or "")
    if status is None:
        logger.info("Unrecognised Stripe status %r; treating as %s", raw_status, UNKNOWN_STATUS.value)
        return UNKNOWN_STATUS
    return status


def _object_id(value: Any) -> str | None:
    """Return the id of a possibly-expanded Stripe reference."""
    if isinstance(value, Mapping):
        value = value.get("id")
    return value or None


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> str | None:
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _object_id(details.get("subscription") or invoice.get("subscription"))


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

ResolverFactory = Callable[[AsyncSession], WorkspaceResolver]
_Handler = Callable[[VerifiedEvent], Awaitable[ReconcileOutcome]]


class BillingReconciler:
    """Applies verified Stripe events to ``billing_records``.

    Parameters
    ----------
    session_factory:
        Factory for sessions on the billing store.  Each write runs in its
        own transaction.
    settings:
        Stripe secrets, price ids and the signature tolerance.
    resolver_factory:
        Builds the customer→workspace resolver for a session.  Defaults to
        :class:`DatabaseWorkspaceResolver`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: APISettings,
        *,
        resolver_factory: ResolverFactory | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._resolver_factory: ResolverFactory = resolver_factory or DatabaseWorkspaceResolver
        self._locks = [asyncio.Lock() for _ in range(_LOCK_STRIPES)]
        self._handlers: dict[str, _Handler] = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_payment_failed,
        }

    def _get_stripe(self, *, authenticated: bool = True) -> Any:
        """Lazily import the Stripe library, setting the API key for API calls.

        Signature checks are local and pass ``authenticated=False``.
        """
        import stripe

        if authenticated:
            stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def verify(self, payload: bytes, signature_header: str | None) -> VerifiedEvent:
        """Check the Stripe signature, then parse the event.

        Raises
        ------
        SignatureInvalid
            On a missing header, an unconfigured secret, a signature or
            timestamp mismatch, or a payload that is not a Stripe event.
        """
        if not signature_header:
            raise SignatureInvalid("Missing Stripe-Signature header")
        secret = self._settings.stripe_webhook_secret.get_secret_value()
        if not secret:
            raise SignatureInvalid("Stripe webhook secret is not configured")

        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureInvalid("Payload is not UTF-8") from exc

        stripe = self._get_stripe(authenticated=False)
        try:
            stripe.WebhookSignature.verify_header(
                text,
                signature_header,
                secret,
                self._settings.stripe_webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureInvalid(str(exc)) from exc

        try:
            return VerifiedEvent.from_payload(json.loads(text))
        except (ValueError, ValidationError) as exc:
            raise SignatureInvalid(f"Malformed Stripe event: {exc}") from exc

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, event: VerifiedEvent) -> ReconcileOutcome:
        """Apply *event*.  Safe to call repeatedly with the same event.

        Raises
        ------
        TransientStoreError
            If the billing store write failed and was rolled back.
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("Ignoring Stripe event %s of type %s", event.id, event.type)
            return _outcome(event, ReconcileStatus.IGNORED, reason="unhandled_event_type")

        try:
            return await handler(event)
        except UnresolvedWorkspace as exc:
            logger.warning(
                "Dropping Stripe event %s (%s): %s",
                event.id,
                event.type,
                exc,
                extra={"webhook": {"event_id": event.id, "customer_id": exc.customer_id}},
            )
            return _outcome(
                event,
                ReconcileStatus.DROPPED,
                subscription_id=exc.subscription_id,
                reason="unresolved_workspace",
            )

    async def _on_checkout_completed(self, event: VerifiedEvent) -> ReconcileOutcome:
        session_obj = event.data_object
        subscription_id = _object_id(session_obj.get("subscription"))
        if session_obj.get("mode") != "subscription" or not subscription_id:
            return _outcome(event, ReconcileStatus.IGNORED, reason="not_a_subscription_checkout")

        snapshot = await self._fetch_subscription(subscription_id)
        metadata = session_obj.get("metadata") or {}
        hint = metadata.get("workspace_id") or session_obj.get("client_reference_id")
        return await self._apply_full(event, snapshot, hint)

    async def _on_subscription_changed(self, event: VerifiedEvent) -> ReconcileOutcome:
        snapshot = SubscriptionSnapshot.from_stripe(event.data_object)
        return await self._apply_full(event, snapshot, snapshot.metadata.get("workspace_id"))

    async def _on_invoice_paid(self, event: VerifiedEvent) -> ReconcileOutcome:
        subscription_id = _invoice_subscription_id(event.data_object)
        if not subscription_id:
            return _outcome(event, ReconcileStatus.IGNORED, reason="no_subscription")
        snapshot = await self._fetch_subscription(subscription_id)
        return await self._apply_full(event, snapshot, snapshot.metadata.get("workspace_id"))

    async def _on_subscription_deleted(self, event: VerifiedEvent) -> ReconcileOutcome:
        obj = event.data_object
        return await self._apply_targeted(
            event,
            subscription_id=_object_id(obj.get("id")),
            customer_id=_object_id(obj.get("customer")),
            status=BillingStatus.CANCELED,
            cancel_at_period_end=False,
        )

    async def _on_invoice_payment_failed(self, event: VerifiedEvent) -> ReconcileOutcome:
        obj = event.data_object
        return await self._apply_targeted(
            event,
            subscription_id=_invoice_subscription_id(obj),
            customer_id=_object_id(obj.get("customer")),
            status=BillingStatus.PAST_DUE,
        )

    async def _apply_full(
        self,
        event: VerifiedEvent,
        snapshot: SubscriptionSnapshot,
        workspace_hint: str | None,
    ) -> ReconcileOutcome:
        """Idempotent upsert of every mutable field from *snapshot*."""
        plan = plan_for_price(snapshot.price_id, self._settings)
        status = normalize_status(snapshot.status)
        fields: dict[str, Any] = {
            "plan": plan.value,
            "status": status.value,
            "current_period_start": snapshot.current_period_start,
            "current_period_end": snapshot.current_period_end,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
        }

        async with self._lock_for(snapshot.customer or snapshot.id):
            async with self._session_factory() as session:
                try:
                    repo = BillingRecordRepository(session)
                    existing = await repo.find_by_identifiers(snapshot.customer, snapshot.id)

                    # A canceled snapshot for an unknown id is an older
                    # subscription; it gets its own record next to the live one.
                    if (
                        existing is not None
                        and existing.external_subscription_id != snapshot.id
                        and existing.status != BillingStatus.CANCELED.value
                        and status is not BillingStatus.CANCELED
                    ):
                        # The customer's live record moves to the new subscription id.
                        workspace_id = existing.workspace_id
                        await repo.update(
                            existing.id,
                            external_customer_id=snapshot.customer,
                            external_subscription_id=snapshot.id,
                            last_event_id=event.id,
                            **fields,
                        )
                    else:
                        if existing is not None:
                            workspace_id = existing.workspace_id
                        else:
                            workspace_id = await self._resolve_workspace(session, snapshot, workspace_hint)
                        await repo.upsert_by_subscription(
                            workspace_id=workspace_id,
                            customer_id=snapshot.customer,
                            subscription_id=snapshot.id,
                            event_id=event.id,
                            **fields,
                        )

                    if status is not BillingStatus.CANCELED:
                        await repo.supersede_active(workspace_id, snapshot.id)
                    await session.commit()
                except SQLAlchemyError as exc:
                    await session.rollback()
                    raise TransientStoreError(f"Billing store write failed for {snapshot.id}: {exc}") from exc

        logger.info(
            "Stripe event %s (%s): subscription %s of workspace %s is %s/%s",
            event.id,
            event.type,
            snapshot.id,
            workspace_id,
            plan.value,
            status.value,
            extra={
                "webhook": {
                    "event_id": event.id,
                    "subscription_id": snapshot.id,
                    "workspace_id": workspace_id,
                    "plan": plan.value,
                    "status": status.value,
                }
            },
        )
        return _outcome(
            event,
            ReconcileStatus.PROCESSED,
            subscription_id=snapshot.id,
            workspace_id=workspace_id,
        )

    async def _apply_targeted(
        self,
        event: VerifiedEvent,
        *,
        subscription_id: str | None,
        customer_id: str | None,
        status: BillingStatus,
        cancel_at_period_end: bool | None = None,
    ) -> ReconcileOutcome:
        """Change only status (and the cancel flag) of a known subscription."""
        if not subscription_id:
            return _outcome(event, ReconcileStatus.IGNORED, reason="no_subscription")

        async with self._lock_for(customer_id or subscription_id):
            async with self._session_factory() as session:
                try:
                    changed = await BillingRecordRepository(session).apply_targeted_update(
                        subscription_id,
                        status=status.value,
                        cancel_at_period_end=cancel_at_period_end,
                        event_id=event.id,
                    )
                    await session.commit()
                except SQLAlchemyError as exc:
                    await session.rollback()
                    raise TransientStoreError(f"Billing store write failed for {subscription_id}: {exc}") from exc

        if not changed:
            logger.info(
                "Stripe event %s (%s) for unknown subscription %s ignored",
                event.id,
                event.type,
                subscription_id,
            )
            return _outcome(
                event,
                ReconcileStatus.IGNORED,
                subscription_id=subscription_id,
                reason="unknown_subscription",
            )

        logger.info("Stripe event %s (%s): subscription %s is %s", event.id, event.type, subscription_id, status.value)
        return _outcome(event, ReconcileStatus.PROCESSED, subscription_id=subscription_id)

    async def _resolve_workspace(
        self,
        session: AsyncSession,
        snapshot: SubscriptionSnapshot,
        workspace_hint: str | None,
    ) -> str:
        """Attribute a new subscription: checkout metadata first, then the resolver.

        A hint naming a workspace that does not exist is ignored.
        """
        if workspace_hint:
            workspaces = WorkspaceRepository(session)
            if await workspaces.get(workspace_hint) is not None:
                if snapshot.customer and await workspaces.get_by_customer(snapshot.customer) is None:
                    await workspaces.attach_customer(workspace_hint, snapshot.customer)
                return workspace_hint
            logger.warning(
                "Subscription %s names unknown workspace %s; falling back to the customer mapping",
                snapshot.id,
                workspace_hint,
            )

        workspace_id = await self._resolver_factory(session).resolve(snapshot.customer)
        if not workspace_id:
            raise UnresolvedWorkspace(snapshot.customer, snapshot.id)
        return workspace_id

    async def _fetch_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """Retrieve the current subscription state from Stripe."""
        stripe = self._get_stripe()
        subscription = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id)
        data = subscription.to_dict() if hasattr(subscription, "to_dict") else dict(subscription)
        return SubscriptionSnapshot.from_stripe(data)

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._locks[zlib.crc32(key.encode("utf-8")) % _LOCK_STRIPES]


def _outcome(event: VerifiedEvent, status: ReconcileStatus, **kwargs: Any) -> ReconcileOutcome:
    return ReconcileOutcome(status=status, event_id=event.id, event_type=event.type, **kwargs)
