"""Email delivery log: one row per send, ``pending`` then ``sent`` or ``failed``.

Logging failures are reported and swallowed; they never block a send.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from clientflow.db import Database

logger = logging.getLogger(__name__)


class DeliveryLogStore(Protocol):
    async def create_pending(
        self, recipient: str, email_type: str, metadata: dict[str, Any] | None = None
    ) -> int | None: ...

    async def mark_sent(self, log_id: int | None, provider_message_id: str, retry_count: int) -> None: ...

    async def mark_failed(self, log_id: int | None, error: str, retry_count: int) -> None: ...


class PostgresDeliveryLogStore:
    def __init__(self, db: Database):
        self._db = db

    async def create_pending(
        self, recipient: str, email_type: str, metadata: dict[str, Any] | None = None
    ) -> int | None:
        try:
            async with self._db.connection() as conn:
                cur = await conn.execute(
                    "INSERT INTO email_delivery_log (recipient, email_type, status, metadata) "
                    "VALUES (%s, %s, 'pending', %s::jsonb) RETURNING id",
                    (recipient, email_type, json.dumps(metadata or {}, default=str)),
                )
                row = await cur.fetchone()
            return row["id"] if row else None
        except Exception:
            logger.warning("Failed to log pending email to %s", recipient, exc_info=True)
            return None

    async def mark_sent(self, log_id: int | None, provider_message_id: str, retry_count: int) -> None:
        if log_id is None:
            return
        try:
            async with self._db.connection() as conn:
                await conn.execute(
                    "UPDATE email_delivery_log SET status = 'sent', provider_message_id = %s, "
                    "retry_count = %s, sent_at = NOW() WHERE id = %s",
                    (provider_message_id, retry_count, log_id),
                )
        except Exception:
            logger.warning("Failed to mark email log %s as sent", log_id, exc_info=True)

    async def mark_failed(self, log_id: int | None, error: str, retry_count: int) -> None:
        if log_id is None:
            return
        try:
            async with self._db.connection() as conn:
                await conn.execute(
                    "UPDATE email_delivery_log SET status = 'failed', error = %s, "
                    "retry_count = %s WHERE id = %s",
                    (error, retry_count, log_id),
                )
        except Exception:
            logger.warning("Failed to mark email log %s as failed", log_id, exc_info=True)
