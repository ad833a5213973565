import os
import tempfile

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="rentals_tests_")

os.environ["ENV"] = "dev"
os.environ.setdefault("DB_URL", f"sqlite:///{os.path.join(_DB_DIR, 'rentals.db')}")
os.environ.setdefault("RL_DISABLE", "true")
os.environ["PROVIDER_BASE_URL"] = ""
os.environ["PROVIDER_BACKOFF_SECS"] = "0"
os.environ["NOTIFY_MODE"] = "log"

from fastapi.testclient import TestClient  # noqa: E402

from app.main import app  # noqa: E402
from app.services import provider as provider_mod  # noqa: E402


@pytest.fixture(scope="session")
def client():
    return TestClient(app)


@pytest.fixture(autouse=True)
def _reset_provider():
    provider_mod.set_provider(None)
    yield
    provider_mod.set_provider(None)
