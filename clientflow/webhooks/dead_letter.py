"""Dead letter recorder — durable audit trail of handler failures.

Only handler-level failures land here. Signature, freshness and duplicate
rejections are expected outcomes with their own response codes.

Records are append-only: the pipeline never updates or deletes them.
A replay that fails again appends a new record; a replay that succeeds
moves the event's ledger outcome to ``processed``.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from clientflow.db import Database
from clientflow.errors import HandlerFailure
from clientflow.webhooks.dispatcher import EventDispatcher
from clientflow.webhooks.idempotency import OUTCOME_PROCESSED, IdempotencyLedger
from clientflow.webhooks.models import DeadLetterRecord, HandlerResult, InboundEvent

logger = logging.getLogger(__name__)


def format_error(error: BaseException) -> tuple[str, str]:
    """Return (message, formatted traceback) for an exception."""
    message = str(error) or error.__class__.__name__
    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return message, stack


@runtime_checkable
class DeadLetterRecorder(Protocol):
    async def record(
        self, event_id: str, event_type: str, error: BaseException, payload: dict[str, Any]
    ) -> None: ...


class PostgresDeadLetterRecorder:
    """Recorder backed by the ``webhook_dead_letters`` table."""

    def __init__(self, db: Database):
        self._db = db

    async def record(
        self, event_id: str, event_type: str, error: BaseException, payload: dict[str, Any]
    ) -> None:
        """Persist a failure. Never raises."""
        message, stack = format_error(error)
        logger.error("Dead-lettering event %s (%s): %s", event_id, event_type, message)
        try:
            async with self._db.connection() as conn:
                await conn.execute(
                    "INSERT INTO webhook_dead_letters "
                    "(event_id, event_type, error_message, error_stack, payload_snapshot) "
                    "VALUES (%s, %s, %s, %s, %s::jsonb)",
                    (event_id, event_type, message, stack, json.dumps(payload, default=str)),
                )
        except Exception:
            logger.exception("Failed to record dead letter for event %s", event_id)

    async def list_recent(self, limit: int = 50) -> list[DeadLetterRecord]:
        async with self._db.connection() as conn:
            cur = await conn.execute(
                "SELECT id, event_id, event_type, error_message, error_stack, "
                "payload_snapshot, recorded_at FROM webhook_dead_letters "
                "ORDER BY recorded_at DESC LIMIT %s",
                (limit,),
            )
            rows = await cur.fetchall()
        return [_row_to_record(row) for row in rows]

    async def get(self, record_id: int) -> DeadLetterRecord | None:
        async with self._db.connection() as conn:
            cur = await conn.execute(
                "SELECT id, event_id, event_type, error_message, error_stack, "
                "payload_snapshot, recorded_at FROM webhook_dead_letters WHERE id = %s",
                (record_id,),
            )
            row = await cur.fetchone()
        return _row_to_record(row) if row else None


def _row_to_record(row: dict[str, Any]) -> DeadLetterRecord:
    payload = row["payload_snapshot"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return DeadLetterRecord(
        id=row["id"],
        event_id=row["event_id"],
        event_type=row["event_type"],
        error_message=row["error_message"],
        error_stack=row.get("error_stack") or "",
        payload_snapshot=payload or {},
        recorded_at=row["recorded_at"],
    )


async def replay_dead_letter(
    record: DeadLetterRecord,
    dispatcher: EventDispatcher,
    recorder: DeadLetterRecorder,
    ledger: IdempotencyLedger | None = None,
) -> HandlerResult:
    """Re-run the handler for a dead-lettered event.

    Bypasses the signature, freshness and idempotency gates: the event was
    verified and claimed when it first arrived. On success the ledger
    outcome moves to ``processed``; the dead letter itself is left as is.
    """
    event = InboundEvent(
        id=record.event_id,
        type=record.event_type,
        created_at=datetime.now(timezone.utc),
        payload=record.payload_snapshot,
    )
    logger.info("Replaying dead letter %s for event %s", record.id, record.event_id)
    try:
        result = await dispatcher.dispatch(event)
        if not result.success:
            raise HandlerFailure(result.message)
    except Exception as exc:
        await recorder.record(event.id, event.type, exc, event.payload)
        message, _ = format_error(exc)
        return HandlerResult(success=False, message=f"Replay failed: {message}")

    if ledger is not None:
        await ledger.record_outcome(event.id, OUTCOME_PROCESSED)
        logger.info("Dead letter %s replayed; event %s marked processed", record.id, event.id)
    else:
        logger.info("Dead letter %s replayed", record.id)
    return result
