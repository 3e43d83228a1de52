# replyflow/conftest.py
import sys
import os
import pytest
from pathlib import Path

# Test mode must be set before replyflow.core.config builds its settings
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture(scope="session")
def db_url(tmp_path_factory):
    """
    Provide the database URL for tests.

    Uses TEST_DATABASE_URL when set (e.g. a disposable Postgres), otherwise
    a SQLite file in a session temp directory.
    """
    url = os.getenv("TEST_DATABASE_URL")
    if url:
        return url
    return f"sqlite:///{tmp_path_factory.mktemp('db') / 'replyflow_test.db'}"


@pytest.fixture(scope="session", autouse=True)
def create_tables(db_url):
    """Bind the engine to the test database and create all tables once per session."""
    from replyflow.core.database import init_engine, create_all_tables, get_engine

    init_engine(db_url)
    create_all_tables()
    yield
    get_engine().dispose()


@pytest.fixture(scope="function", autouse=True)
def reset_db(create_tables):
    """
    Empty every table before each test.

    DELETE instead of TRUNCATE so the same fixture works on SQLite.
    """
    from replyflow.core.database import get_db_session, metadata

    with get_db_session() as session:
        for table in reversed(metadata.sorted_tables):
            session.execute(table.delete())
    yield


@pytest.fixture
def make_profile():
    """
    Factory for profiles with an optional subscription record.

    Usage:
        profile = make_profile("user_alice", customer_id="cus_1", tier="pro", status="active")
    """
    from sqlalchemy import update
    from replyflow.core.database import get_db_session, profiles
    from replyflow.features.users.service import create_profile, get_profile

    def _make(
        user_id: str = "user_alice",
        *,
        customer_id=None,
        tier="free",
        status="none",
        subscribed_until=None,
        subscription_id=None,
        last_billing_event_at=None,
    ):
        create_profile(user_id, email=f"{user_id}@example.com")
        with get_db_session() as session:
            session.execute(
                update(profiles)
                .where(profiles.c.user_id == user_id)
                .values(
                    external_customer_id=customer_id,
                    tier=tier,
                    subscription_status=status,
                    subscribed_until=subscribed_until,
                    external_subscription_id=subscription_id,
                    last_billing_event_at=last_billing_event_at,
                )
            )
        return get_profile(user_id)

    return _make


@pytest.fixture
def set_counter():
    """Write counter values directly; test setup only."""
    from sqlalchemy import update
    from replyflow.core.database import get_db_session, usage_counters

    def _set(user_id: str, **values):
        with get_db_session() as session:
            session.execute(
                update(usage_counters).where(usage_counters.c.user_id == user_id).values(**values)
            )

    return _set
