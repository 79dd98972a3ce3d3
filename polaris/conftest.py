# polaris/conftest.py
import sys
import os
import tempfile
import pytest
from pathlib import Path

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Test environment must be in place before polaris.core.config builds settings
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("AUTH_HEADER_FALLBACK", "true")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test_secret_0123456789")
os.environ.setdefault(
    "TEST_DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), f"polaris_test_{os.getpid()}.db"),
)

WEBHOOK_SECRET = os.environ["RAZORPAY_WEBHOOK_SECRET"]


@pytest.fixture(scope="session")
def db_url():
    """Database URL the test session runs against."""
    return os.environ["TEST_DATABASE_URL"]


@pytest.fixture(scope="session", autouse=True)
def create_tables(db_url):
    """
    Create all database tables before running tests.

    Runs once per test session against TEST_DATABASE_URL.
    """
    from polaris.core.database import init_engine, create_all_tables, drop_all_tables

    init_engine(db_url)
    drop_all_tables()
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Clear all tables before each test.

    Every test starts with an empty ledger and no subscriptions.
    """
    from polaris.core.database import get_engine, metadata

    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture
def webhook_secret():
    return WEBHOOK_SECRET
