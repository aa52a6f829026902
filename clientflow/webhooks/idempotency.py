"""Webhook idempotency — durable Postgres ledger of processed event IDs.

Security contract:
- The claim is one atomic INSERT ... ON CONFLICT DO NOTHING on a
  primary key, so two concurrent deliveries of the same event yield
  exactly one winner
- Duplicates are acknowledged with 200 (the provider retries on errors)
- If the ledger is unreachable or its statement fails (missing table,
  broken connection) the claim raises LedgerUnavailable and
  the request is failed (fail-closed): the provider will redeliver, and
  side effects never run without a claim
- Ledger rows are retained indefinitely, so protection has no TTL
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import psycopg

from clientflow.db import Database
from clientflow.errors import LedgerUnavailable
from clientflow.webhooks.models import IdempotencyRecord, InboundEvent

logger = logging.getLogger(__name__)

OUTCOME_PROCESSING = "processing"
OUTCOME_PROCESSED = "processed"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool


@runtime_checkable
class IdempotencyLedger(Protocol):
    async def claim(self, event: InboundEvent) -> ClaimResult: ...

    async def record_outcome(self, event_id: str, outcome: str) -> None: ...

    async def get(self, event_id: str) -> IdempotencyRecord | None: ...


class PostgresIdempotencyLedger:
    """Ledger backed by the ``webhook_events`` table."""

    def __init__(self, db: Database):
        self._db = db

    async def claim(self, event: InboundEvent) -> ClaimResult:
        """Atomically record the event ID; ``claimed`` is False on conflict."""
        try:
            async with self._db.connection() as conn:
                cur = await conn.execute(
                    "INSERT INTO webhook_events (event_id, event_type, processed_at, outcome) "
                    "VALUES (%s, %s, NOW(), %s) "
                    "ON CONFLICT (event_id) DO NOTHING "
                    "RETURNING event_id",
                    (event.id, event.type, OUTCOME_PROCESSING),
                )
                row = await cur.fetchone()
        except psycopg.Error as exc:
            logger.error("Idempotency ledger unreachable for event %s", event.id, exc_info=True)
            raise LedgerUnavailable(str(exc)) from exc

        if row is None:
            logger.info("Duplicate webhook rejected: %s (%s)", event.id, event.type)
            return ClaimResult(claimed=False)
        return ClaimResult(claimed=True)

    async def record_outcome(self, event_id: str, outcome: str) -> None:
        """Best-effort outcome update; the claim row already prevents reprocessing."""
        try:
            async with self._db.connection() as conn:
                await conn.execute(
                    "UPDATE webhook_events SET outcome = %s WHERE event_id = %s",
                    (outcome, event_id),
                )
        except psycopg.Error:
            logger.warning("Failed to record outcome %s for event %s", outcome, event_id, exc_info=True)

    async def get(self, event_id: str) -> IdempotencyRecord | None:
        async with self._db.connection() as conn:
            cur = await conn.execute(
                "SELECT event_id, event_type, processed_at, outcome "
                "FROM webhook_events WHERE event_id = %s",
                (event_id,),
            )
            row = await cur.fetchone()
        if row is None:
            return None
        return IdempotencyRecord(**row)
