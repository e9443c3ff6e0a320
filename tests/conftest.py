import os
import sys

import pytest

# Ensure project root is importable (so `import routesync...` and `import main` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fakes import FakeAdminAPI, FakeSource, make_client  # noqa: E402
from routesync.settings import Settings  # noqa: E402
from routesync.tracker import RouteTracker  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    return Settings(
        namespace="apps",
        base_domain="example.com",
        db_path=str(tmp_path / "events.db"),
        recovery_initial_delay_s=0,
        recovery_max_delay_s=0,
        recovery_max_attempts=3,
    ).validated()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def api():
    return FakeAdminAPI()


@pytest.fixture
def client(api):
    c = make_client(api)
    yield c
    c.close()


@pytest.fixture
def tracker():
    return RouteTracker()
