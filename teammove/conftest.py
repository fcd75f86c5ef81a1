# teammove/conftest.py
import sys
import os
import pytest
from pathlib import Path

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# Must be set before teammove.core.config builds its settings
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")


@pytest.fixture(scope="session")
def db_url(tmp_path_factory):
    """
    Provide the database URL for tests.

    Uses TEST_DATABASE_URL when set (e.g. a Postgres test database),
    otherwise a throwaway SQLite file.
    """
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        url = f"sqlite:///{tmp_path_factory.mktemp('db') / 'teammove_test.db'}"
        os.environ["TEST_DATABASE_URL"] = url

    from teammove.core.database import init_engine
    init_engine(url)
    return url


@pytest.fixture(scope="function", autouse=True)
def reset_db(db_url):
    """Recreate all tables before each test."""
    from teammove.core.database import reset_database
    reset_database()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_process_state():
    """Reset process-wide caches: plan catalog, listeners, metrics."""
    from teammove.core.metrics import METRICS
    from teammove.features.notifications.emitter import clear_listeners
    from teammove.features.plans.catalog import get_plan_catalog

    get_plan_catalog.cache_clear()
    clear_listeners()
    METRICS.reset()
    yield
    get_plan_catalog.cache_clear()
    clear_listeners()


@pytest.fixture
def catalog():
    from teammove.features.plans.catalog import load_plan_catalog
    return load_plan_catalog()


@pytest.fixture
def tenant(catalog):
    """A registered tenant on the free plan."""
    from teammove.features.subscriptions.service import register_tenant
    register_tenant("club_lyon", email="orga@club-lyon.fr", name="Club Lyon", catalog=catalog)
    return "club_lyon"


@pytest.fixture
def captured_changes():
    """Collect subscription change events emitted during a test."""
    from teammove.features.notifications.emitter import register_listener

    events = []
    register_listener(events.append)
    return events
