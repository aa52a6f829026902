"""Email preference lookup.

A user with no preference row receives everything. Lookup errors fail
open: a broken preferences table must not silence transactional mail.
"""

from __future__ import annotations

import logging
from typing import Protocol

from clientflow.db import Database
from clientflow.notifications.models import EmailPreference

logger = logging.getLogger(__name__)

CATEGORY_COLUMNS = ("sla_warnings", "status_updates", "comments", "billing")

# Email types with a template that an opt-out column governs. The other
# columns belong to dashboard notifications this service does not send.
_TYPE_CATEGORIES = {"payment_failed": "billing"}


def category_for(email_type: str) -> str | None:
    """Map an email type to its preference column, or None if uncategorised."""
    return _TYPE_CATEGORIES.get(email_type)


class PreferenceStore(Protocol):
    async def get(self, user_id: str) -> EmailPreference | None: ...


class PostgresPreferenceStore:
    def __init__(self, db: Database):
        self._db = db

    async def get(self, user_id: str) -> EmailPreference | None:
        async with self._db.connection() as conn:
            cur = await conn.execute(
                "SELECT user_id, email_enabled, sla_warnings, status_updates, comments, billing "
                "FROM email_preferences WHERE user_id = %s",
                (user_id,),
            )
            row = await cur.fetchone()
        if row is None:
            return None
        return EmailPreference(
            user_id=row["user_id"],
            email_enabled=row["email_enabled"],
            category_flags={col: row[col] for col in CATEGORY_COLUMNS},
        )


async def is_allowed(store: PreferenceStore, user_id: str | None, email_type: str) -> bool:
    """True unless the user has opted out of this email type."""
    if not user_id:
        return True  # system emails have no user
    try:
        preference = await store.get(user_id)
    except Exception:
        logger.warning("Error checking email preferences for %s, allowing", user_id, exc_info=True)
        return True
    if preference is None:
        return True
    return preference.allows(category_for(email_type))
