"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides stores backed by a temp SQLite file plus a service with a
fixed clock.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

# Fixed "now" used by the service fixture: Monday 2024-01-01, 09:00 UTC
FIXED_NOW = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
TODAY = date(2024, 1, 1)


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path shared by every store."""
    return str(tmp_path / "test_tasks.db")


@pytest.fixture
def template_db(tmp_db_path):
    from src.data.db import TemplateDB
    return TemplateDB(db_path=tmp_db_path, max_batch_operations=500)


@pytest.fixture
def task_db(tmp_db_path):
    from src.data.db import TaskDB
    return TaskDB(db_path=tmp_db_path, max_batch_operations=500)


@pytest.fixture
def group_db(tmp_db_path):
    from src.data.db import GroupDB
    return GroupDB(db_path=tmp_db_path, max_batch_operations=500)


@pytest.fixture
def user_db(tmp_db_path):
    from src.data.db import UserDB
    return UserDB(db_path=tmp_db_path, max_batch_operations=500)


@pytest.fixture
def clock():
    """Mutable clock: set ``clock.now`` to move time."""

    class _Clock:
        now = FIXED_NOW

        def __call__(self):
            return self.now

    return _Clock()


@pytest.fixture
def service(template_db, task_db, group_db, user_db, clock):
    """TaskService over the temp stores, UTC, 14-day horizon, no allow-list."""
    from src.core.task_service import TaskService
    return TaskService(
        template_db, task_db, group_db, user_db,
        notifier=None,
        tz=ZoneInfo("UTC"),
        horizon_days=14,
        allowed_user_ids=[],
        clock=clock,
    )


@pytest.fixture
def alice(user_db):
    return user_db.add_user("alice", "Alice", push_token="chat-alice")


@pytest.fixture
def bob(user_db):
    return user_db.add_user("bob", "Bob", push_token="chat-bob")
