"""Billing event handlers — subscription lifecycle and invoice payments.

Each handler performs its related writes inside one database transaction
(``BillingStore.unit_of_work()``). Any failed write raises, the transaction
rolls back, and the processor dead-letters the event. Nothing is left
half-written.

Side effects that reach outside the database (onboarding, payment-failure
email) run only after the transaction has committed.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from clientflow.db import Database
from clientflow.errors import ClientNotFound, HandlerFailure, SubscriptionNotFound
from clientflow.notifications.models import EmailSpec, Recipient
from clientflow.onboarding.models import ClientOnboardingData
from clientflow.webhooks.dispatcher import EventDispatcher
from clientflow.webhooks.models import HandlerResult, InboundEvent

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
PAYMENT_FAILED = "invoice.payment_failed"


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClientRecord:
    id: str
    company_name: str
    contact_first_name: str
    contact_last_name: str
    email: str
    stripe_customer_id: str


@dataclass(frozen=True)
class SubscriptionRow:
    stripe_subscription_id: str
    stripe_customer_id: str
    stripe_price_id: str
    plan_type: str
    plan_amount: int
    plan_interval: str
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    cancelled_at: datetime | None


@dataclass(frozen=True)
class PaymentEventRow:
    invoice_id: str
    subscription_id: str | None
    customer_id: str
    amount_paid: int
    currency: str
    status: str
    payment_intent_id: str | None
    error_message: str | None = None


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def subscription_row_from_payload(obj: dict[str, Any]) -> SubscriptionRow:
    """Flatten a provider subscription object into a row."""
    items = (obj.get("items") or {}).get("data") or [{}]
    price = items[0].get("price") or {}
    recurring = price.get("recurring") or {}
    metadata = obj.get("metadata") or {}
    return SubscriptionRow(
        stripe_subscription_id=obj["id"],
        stripe_customer_id=obj["customer"],
        stripe_price_id=price.get("id") or "unknown",
        plan_type=metadata.get("plan_type") or "core",
        plan_amount=int(price.get("unit_amount") or 0),
        plan_interval=recurring.get("interval") or "month",
        status=obj.get("status") or "incomplete",
        current_period_start=_timestamp(obj.get("current_period_start")),
        current_period_end=_timestamp(obj.get("current_period_end")),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
        cancelled_at=_timestamp(obj.get("canceled_at")),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class BillingUnitOfWork(Protocol):
    async def find_client_by_customer(self, customer_id: str) -> ClientRecord | None: ...

    async def insert_subscription(self, client_id: str, row: SubscriptionRow) -> None: ...

    async def update_subscription(self, row: SubscriptionRow) -> int: ...

    async def set_subscription_status(
        self, stripe_subscription_id: str, status: str, cancelled_at: datetime | None = None
    ) -> int: ...

    async def set_client_status(
        self, client_id: str, subscription_status: str, status: str | None = None
    ) -> int: ...

    async def insert_payment_event(self, row: PaymentEventRow) -> None: ...


class BillingStore(Protocol):
    def unit_of_work(self) -> AbstractAsyncContextManager[BillingUnitOfWork]: ...


class _PostgresUnitOfWork:
    def __init__(self, conn):
        self._conn = conn

    async def find_client_by_customer(self, customer_id: str) -> ClientRecord | None:
        cur = await self._conn.execute(
            "SELECT id::text AS id, company_name, contact_first_name, contact_last_name, "
            "email, stripe_customer_id FROM clients WHERE stripe_customer_id = %s",
            (customer_id,),
        )
        row = await cur.fetchone()
        return ClientRecord(**row) if row else None

    async def insert_subscription(self, client_id: str, row: SubscriptionRow) -> None:
        await self._conn.execute(
            """
            INSERT INTO subscriptions (
                client_id, stripe_subscription_id, stripe_customer_id, stripe_price_id,
                plan_type, plan_amount, plan_interval, status, current_period_start,
                current_period_end, cancel_at_period_end, cancelled_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                client_id,
                row.stripe_subscription_id,
                row.stripe_customer_id,
                row.stripe_price_id,
                row.plan_type,
                row.plan_amount,
                row.plan_interval,
                row.status,
                row.current_period_start,
                row.current_period_end,
                row.cancel_at_period_end,
                row.cancelled_at,
            ),
        )

    async def update_subscription(self, row: SubscriptionRow) -> int:
        cur = await self._conn.execute(
            """
            UPDATE subscriptions SET
                stripe_customer_id = %s, stripe_price_id = %s, plan_amount = %s,
                plan_interval = %s, status = %s, current_period_start = %s,
                current_period_end = %s, cancel_at_period_end = %s, cancelled_at = %s,
                updated_at = NOW()
            WHERE stripe_subscription_id = %s
            """,
            (
                row.stripe_customer_id,
                row.stripe_price_id,
                row.plan_amount,
                row.plan_interval,
                row.status,
                row.current_period_start,
                row.current_period_end,
                row.cancel_at_period_end,
                row.cancelled_at,
                row.stripe_subscription_id,
            ),
        )
        return cur.rowcount

    async def set_subscription_status(
        self, stripe_subscription_id: str, status: str, cancelled_at: datetime | None = None
    ) -> int:
        cur = await self._conn.execute(
            "UPDATE subscriptions SET status = %s, "
            "cancelled_at = COALESCE(%s, cancelled_at), updated_at = NOW() "
            "WHERE stripe_subscription_id = %s",
            (status, cancelled_at, stripe_subscription_id),
        )
        return cur.rowcount

    async def set_client_status(
        self, client_id: str, subscription_status: str, status: str | None = None
    ) -> int:
        cur = await self._conn.execute(
            "UPDATE clients SET subscription_status = %s, "
            "status = COALESCE(%s, status), updated_at = NOW() WHERE id = %s",
            (subscription_status, status, client_id),
        )
        return cur.rowcount

    async def insert_payment_event(self, row: PaymentEventRow) -> None:
        await self._conn.execute(
            "INSERT INTO payment_events (invoice_id, subscription_id, customer_id, "
            "amount_paid, currency, status, payment_intent_id, error_message) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
            (
                row.invoice_id,
                row.subscription_id,
                row.customer_id,
                row.amount_paid,
                row.currency,
                row.status,
                row.payment_intent_id,
                row.error_message,
            ),
        )


class PostgresBillingStore:
    """BillingStore over one transaction per unit of work."""

    def __init__(self, db: Database):
        self._db = db

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[_PostgresUnitOfWork]:
        async with self._db.transaction() as conn:
            yield _PostgresUnitOfWork(conn)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

OnboardingRunner = Callable[[ClientOnboardingData, str], Awaitable[Any]]


class Notifier(Protocol):
    async def send(self, spec: EmailSpec) -> Any: ...


class BillingEventHandlers:
    """The five billing handlers, bound to a store and post-commit hooks."""

    def __init__(
        self,
        store: BillingStore,
        billing_portal_url: str = "",
        onboard: OnboardingRunner | None = None,
        notifier: Notifier | None = None,
    ):
        self._store = store
        self._billing_portal_url = billing_portal_url
        self._onboard = onboard
        self._notifier = notifier

    def register_all(self, dispatcher: EventDispatcher) -> None:
        dispatcher.register(SUBSCRIPTION_CREATED, self.subscription_created)
        dispatcher.register(SUBSCRIPTION_UPDATED, self.subscription_updated)
        dispatcher.register(SUBSCRIPTION_DELETED, self.subscription_deleted)
        dispatcher.register(PAYMENT_SUCCEEDED, self.payment_succeeded)
        dispatcher.register(PAYMENT_FAILED, self.payment_failed)

    @staticmethod
    async def _require_client(uow: BillingUnitOfWork, customer_id: str | None) -> ClientRecord:
        if not customer_id:
            raise HandlerFailure("Event payload has no customer ID")
        client = await uow.find_client_by_customer(customer_id)
        if client is None:
            raise ClientNotFound(customer_id)
        return client

    async def subscription_created(self, event: InboundEvent) -> HandlerResult:
        row = subscription_row_from_payload(event.payload)
        async with self._store.unit_of_work() as uow:
            client = await self._require_client(uow, row.stripe_customer_id)
            await uow.insert_subscription(client.id, row)
            await uow.set_client_status(client.id, row.status, status="active")
        logger.info(
            "Subscription %s created for client %s", row.stripe_subscription_id, client.id
        )

        if self._onboard is not None:
            data = ClientOnboardingData(
                client_id=client.id,
                company_name=client.company_name,
                first_name=client.contact_first_name,
                last_name=client.contact_last_name,
                email=client.email,
                stripe_customer_id=client.stripe_customer_id,
                stripe_subscription_id=row.stripe_subscription_id,
                billing_portal_url=self._billing_portal_url,
            )
            try:
                await self._onboard(data, event.id)
            except Exception:
                # Writes are committed; onboarding failures are surfaced through its own run record
                logger.exception("Onboarding raised for client %s (event %s)", client.id, event.id)

        return HandlerResult(success=True, message="Subscription created successfully")

    async def subscription_updated(self, event: InboundEvent) -> HandlerResult:
        row = subscription_row_from_payload(event.payload)
        async with self._store.unit_of_work() as uow:
            client = await self._require_client(uow, row.stripe_customer_id)
            if await uow.update_subscription(row) == 0:
                raise SubscriptionNotFound(row.stripe_subscription_id)
            await uow.set_client_status(client.id, row.status)
        logger.info("Subscription %s updated (status=%s)", row.stripe_subscription_id, row.status)
        return HandlerResult(success=True, message="Subscription updated successfully")

    async def subscription_deleted(self, event: InboundEvent) -> HandlerResult:
        subscription_id = event.payload.get("id", "")
        async with self._store.unit_of_work() as uow:
            client = await self._require_client(uow, event.payload.get("customer"))
            updated = await uow.set_subscription_status(
                subscription_id, "cancelled", cancelled_at=datetime.now(timezone.utc)
            )
            if updated == 0:
                raise SubscriptionNotFound(subscription_id)
            await uow.set_client_status(client.id, "cancelled", status="churned")
        logger.info("Subscription %s cancelled for client %s", subscription_id, client.id)
        return HandlerResult(success=True, message="Subscription canceled successfully")

    async def payment_succeeded(self, event: InboundEvent) -> HandlerResult:
        invoice = event.payload
        payment = PaymentEventRow(
            invoice_id=invoice.get("id", ""),
            subscription_id=invoice.get("subscription"),
            customer_id=invoice.get("customer", ""),
            amount_paid=int(invoice.get("amount_paid") or 0),
            currency=invoice.get("currency") or "usd",
            status="succeeded",
            payment_intent_id=invoice.get("payment_intent"),
        )
        async with self._store.unit_of_work() as uow:
            await uow.insert_payment_event(payment)
            if payment.subscription_id:
                client = await self._require_client(uow, payment.customer_id)
                if await uow.set_subscription_status(payment.subscription_id, "active") == 0:
                    logger.warning(
                        "Payment for unknown subscription %s (invoice %s)",
                        payment.subscription_id,
                        payment.invoice_id,
                    )
                await uow.set_client_status(client.id, "active", status="active")
        logger.info("Payment succeeded for invoice %s", payment.invoice_id)
        return HandlerResult(success=True, message="Payment logged successfully")

    async def payment_failed(self, event: InboundEvent) -> HandlerResult:
        invoice = event.payload
        payment = PaymentEventRow(
            invoice_id=invoice.get("id", ""),
            subscription_id=invoice.get("subscription"),
            customer_id=invoice.get("customer", ""),
            amount_paid=0,
            currency=invoice.get("currency") or "usd",
            status="failed",
            payment_intent_id=invoice.get("payment_intent"),
            error_message="Payment failed",
        )
        client = None
        async with self._store.unit_of_work() as uow:
            await uow.insert_payment_event(payment)
            if payment.subscription_id:
                client = await self._require_client(uow, payment.customer_id)
                if await uow.set_subscription_status(payment.subscription_id, "past_due") == 0:
                    logger.warning(
                        "Payment failure for unknown subscription %s (invoice %s)",
                        payment.subscription_id,
                        payment.invoice_id,
                    )
                await uow.set_client_status(client.id, "past_due")
        logger.info("Payment failed for invoice %s", payment.invoice_id)

        if client is not None and self._notifier is not None:
            await self._notifier.send(
                EmailSpec(
                    email_type="payment_failed",
                    recipient=Recipient(
                        email=client.email, user_id=client.id, name=client.contact_first_name
                    ),
                    context={
                        "company_name": client.company_name,
                        "amount_due": int(invoice.get("amount_due") or 0),
                        "currency": payment.currency,
                        "billing_portal_url": self._billing_portal_url,
                    },
                )
            )

        return HandlerResult(success=True, message="Payment failure logged successfully")
