"""Shared fixtures for the clientflow test suite."""

from __future__ import annotations

import pytest

from payloads import WEBHOOK_SECRET


@pytest.fixture()
def webhook_secret() -> str:
    return WEBHOOK_SECRET
