import asyncio
import os
import tempfile

# Keep test runs from writing into the user's log directory.
os.environ.setdefault("SOULSPACE_LOG_DIR", tempfile.mkdtemp(prefix="soulspace-logs-"))

import pytest

from soulspace.config import EngineConfig
from soulspace.presets import MemoryStore
from soulspace.render import OfflineSession


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def session(store: MemoryStore) -> OfflineSession:
    config = EngineConfig(sample_rate=8_000, block_size=256, seed=7)
    return OfflineSession(config=config, store=store, seed=7)


@pytest.fixture
def playing(session: OfflineSession) -> OfflineSession:
    assert asyncio.run(session.engine.start()) == "started"
    return session
