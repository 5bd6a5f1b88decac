from __future__ import annotations

import os

# Settings are read when smartchat.persistence.db is first imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LLM_PROVIDER", "fake")
os.environ.setdefault("TOKENIZER_BACKEND", "ratio")
os.environ.setdefault("CB_REDIS_ENABLED", "false")

import pytest  # noqa: E402

from smartchat.core.config import get_settings  # noqa: E402
from smartchat.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
def reset_state_between_tests() -> None:
    # Counters and cached settings are process-global.
    reset_telemetry()
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
