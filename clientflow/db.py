"""Postgres access: async psycopg connections and the pipeline schema.

Each call opens a short-lived connection. Webhook invocations are
independent and stateless, so no pool state is shared between requests.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS clients (
    id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    company_name        TEXT NOT NULL,
    contact_first_name  TEXT NOT NULL DEFAULT '',
    contact_last_name   TEXT NOT NULL DEFAULT '',
    email               TEXT NOT NULL,
    stripe_customer_id  TEXT UNIQUE,
    status              TEXT NOT NULL DEFAULT 'pending',
    subscription_status TEXT,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id                     BIGSERIAL PRIMARY KEY,
    client_id              UUID NOT NULL REFERENCES clients(id),
    stripe_subscription_id TEXT NOT NULL UNIQUE,
    stripe_customer_id     TEXT NOT NULL,
    stripe_price_id        TEXT NOT NULL,
    plan_type              TEXT NOT NULL DEFAULT 'core',
    plan_amount            INTEGER NOT NULL DEFAULT 0,
    plan_interval          TEXT NOT NULL DEFAULT 'month',
    status                 TEXT NOT NULL,
    current_period_start   TIMESTAMPTZ,
    current_period_end     TIMESTAMPTZ,
    cancel_at_period_end   BOOLEAN NOT NULL DEFAULT FALSE,
    cancelled_at           TIMESTAMPTZ,
    created_at             TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at             TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS payment_events (
    id                BIGSERIAL PRIMARY KEY,
    invoice_id        TEXT NOT NULL,
    subscription_id   TEXT,
    customer_id       TEXT NOT NULL,
    amount_paid       INTEGER NOT NULL DEFAULT 0,
    currency          TEXT NOT NULL DEFAULT 'usd',
    status            TEXT NOT NULL,
    payment_intent_id TEXT,
    error_message     TEXT,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS webhook_events (
    event_id     TEXT PRIMARY KEY,
    event_type   TEXT NOT NULL,
    processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    outcome      TEXT NOT NULL DEFAULT 'processing'
);

CREATE TABLE IF NOT EXISTS webhook_dead_letters (
    id               BIGSERIAL PRIMARY KEY,
    event_id         TEXT NOT NULL,
    event_type       TEXT NOT NULL,
    error_message    TEXT NOT NULL,
    error_stack      TEXT,
    payload_snapshot JSONB NOT NULL DEFAULT '{}'::jsonb,
    recorded_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_dead_letters_event ON webhook_dead_letters (event_id);

CREATE TABLE IF NOT EXISTS onboarding_runs (
    id                  BIGSERIAL PRIMARY KEY,
    client_id           TEXT NOT NULL,
    triggering_event_id TEXT NOT NULL,
    steps               JSONB NOT NULL,
    overall_success     BOOLEAN NOT NULL,
    started_at          TIMESTAMPTZ NOT NULL,
    completed_at        TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS email_delivery_log (
    id                  BIGSERIAL PRIMARY KEY,
    recipient           TEXT NOT NULL,
    email_type          TEXT NOT NULL,
    status              TEXT NOT NULL CHECK (status IN ('pending', 'sent', 'failed')),
    provider_message_id TEXT,
    error               TEXT,
    retry_count         INTEGER NOT NULL DEFAULT 0,
    metadata            JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    sent_at             TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS email_preferences (
    user_id        TEXT PRIMARY KEY,
    email_enabled  BOOLEAN NOT NULL DEFAULT TRUE,
    sla_warnings   BOOLEAN NOT NULL DEFAULT TRUE,
    status_updates BOOLEAN NOT NULL DEFAULT TRUE,
    comments       BOOLEAN NOT NULL DEFAULT TRUE,
    billing        BOOLEAN NOT NULL DEFAULT TRUE
);
"""


class Database:
    """Thin async wrapper around psycopg connections."""

    def __init__(self, url: str, connect_timeout: int = 10):
        self._url = url
        self._connect_timeout = connect_timeout

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[psycopg.AsyncConnection]:
        """Autocommit connection: every statement is its own transaction."""
        conn = await psycopg.AsyncConnection.connect(
            self._url,
            autocommit=True,
            row_factory=dict_row,
            connect_timeout=self._connect_timeout,
        )
        async with conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[psycopg.AsyncConnection]:
        """Connection inside BEGIN/COMMIT; rolls back if the block raises."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn


async def init_schema(db: Database) -> None:
    """Create all pipeline tables if they do not exist."""
    async with db.connection() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Database schema ensured")
