"""Tests for the Postgres idempotency ledger (against a fake connection)."""

from __future__ import annotations

from datetime import datetime, timezone

import psycopg
import pytest

from clientflow.errors import LedgerUnavailable
from clientflow.webhooks.idempotency import (
    OUTCOME_PROCESSED,
    IdempotencyLedger,
    PostgresIdempotencyLedger,
)
from clientflow.webhooks.models import InboundEvent
from fakes import FakeCursor, FakeDatabase

EVENT = InboundEvent(
    id="evt_123",
    type="customer.subscription.created",
    created_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
)


class TestClaim:
    @pytest.mark.asyncio
    async def test_inserted_row_means_claimed(self):
        db = FakeDatabase(lambda sql, params: FakeCursor([{"event_id": params[0]}]))
        result = await PostgresIdempotencyLedger(db).claim(EVENT)
        assert result.claimed is True

    @pytest.mark.asyncio
    async def test_conflict_means_duplicate(self):
        db = FakeDatabase(lambda sql, params: FakeCursor([]))
        result = await PostgresIdempotencyLedger(db).claim(EVENT)
        assert result.claimed is False

    @pytest.mark.asyncio
    async def test_claim_is_single_atomic_statement(self):
        db = FakeDatabase(lambda sql, params: FakeCursor([{"event_id": params[0]}]))
        await PostgresIdempotencyLedger(db).claim(EVENT)
        assert len(db.conn.statements) == 1
        sql, params = db.conn.statements[0]
        assert sql.startswith("INSERT INTO webhook_events")
        assert "ON CONFLICT (event_id) DO NOTHING" in sql
        assert "RETURNING event_id" in sql
        assert params[:2] == ("evt_123", "customer.subscription.created")

    @pytest.mark.asyncio
    async def test_unreachable_database_raises_ledger_unavailable(self):
        db = FakeDatabase(connect_error=psycopg.OperationalError("connection refused"))
        with pytest.raises(LedgerUnavailable):
            await PostgresIdempotencyLedger(db).claim(EVENT)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            psycopg.errors.UndefinedTable('relation "webhook_events" does not exist'),
            psycopg.InterfaceError("connection already closed"),
        ],
    )
    async def test_any_driver_error_raises_ledger_unavailable(self, error):
        def responder(sql, params):
            raise error

        with pytest.raises(LedgerUnavailable):
            await PostgresIdempotencyLedger(FakeDatabase(responder)).claim(EVENT)


class TestOutcome:
    @pytest.mark.asyncio
    async def test_record_outcome_updates_row(self):
        db = FakeDatabase()
        await PostgresIdempotencyLedger(db).record_outcome("evt_123", OUTCOME_PROCESSED)
        sql, params = db.conn.statements[0]
        assert sql.startswith("UPDATE webhook_events SET outcome")
        assert params == ("processed", "evt_123")

    @pytest.mark.asyncio
    async def test_record_outcome_failure_is_swallowed(self):
        db = FakeDatabase(connect_error=psycopg.OperationalError("down"))
        await PostgresIdempotencyLedger(db).record_outcome("evt_123", OUTCOME_PROCESSED)

    @pytest.mark.asyncio
    async def test_get_returns_record(self):
        row = {
            "event_id": "evt_123",
            "event_type": "customer.subscription.created",
            "processed_at": datetime(2026, 3, 1, tzinfo=timezone.utc),
            "outcome": "processed",
        }
        db = FakeDatabase(lambda sql, params: FakeCursor([row]))
        record = await PostgresIdempotencyLedger(db).get("evt_123")
        assert record.outcome == "processed"

    @pytest.mark.asyncio
    async def test_get_missing(self):
        db = FakeDatabase(lambda sql, params: FakeCursor([]))
        assert await PostgresIdempotencyLedger(db).get("evt_nope") is None


def test_satisfies_protocol():
    assert isinstance(PostgresIdempotencyLedger(FakeDatabase()), IdempotencyLedger)
