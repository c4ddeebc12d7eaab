import sys
from pathlib import Path

import pytest

# Ensure `backend/` is on sys.path so tests can import local modules
# like `engine.*`, `geo.*` and `zones.*`.
BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))

from engine.store import SpatialStore  # noqa: E402
from settings.types import EngineSettings, StoreSettings  # noqa: E402


@pytest.fixture
def engine_settings() -> EngineSettings:
    # Small batches so multi-batch ingestion is exercised with tiny datasets.
    return EngineSettings(store=StoreSettings(threads=1, batch_size=2))


@pytest.fixture
def store(engine_settings):
    s = SpatialStore(engine_settings)
    s.initialize()
    yield s
    s.close()
