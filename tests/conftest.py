import os
import sys
from contextlib import asynccontextmanager
from datetime import date

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from ladder.database.database import Database
from ladder.services.gauntlet_lock import GauntletLockManager
from ladder.services.ladder_service import LadderService

TODAY = date(2025, 6, 1)


class FakeRedis:
    """In-memory stand-in for the redis.asyncio client calls the lock uses"""

    def __init__(self):
        self.store = {}
        self.closed = False
        self.set_calls = 0

    async def set(self, key, value, nx=False, ex=None):
        self.set_calls += 1
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0

    async def aclose(self):
        self.closed = True


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'ladder_test.db'}"


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def ladder_env(database_url):
    """Factory opening an initialized Database plus LadderService for one test"""

    @asynccontextmanager
    async def open_env(**service_kwargs):
        db = Database(database_url)
        await db.initialize()
        service_kwargs.setdefault('today', lambda: TODAY)
        service_kwargs.setdefault('lock_manager', GauntletLockManager(timeout=5))
        service = LadderService(db, **service_kwargs)
        try:
            yield service
        finally:
            await db.close()

    return open_env


async def seed_gauntlet(service, lineup_count, boat_type="8+"):
    """Create an active gauntlet with lineup_count crews entered at 1..N"""
    gauntlet = await service.create_gauntlet("Spring Eights", boat_type, created_by="coach")
    lineups = []
    for index in range(lineup_count):
        lineups.append(await service.create_lineup(gauntlet.id, name=f"Crew {index + 1}"))
    return gauntlet, lineups


async def positions_by_lineup(service, gauntlet_id):
    ladder = await service.get_ladder(gauntlet_id)
    return {row.lineup_id: row for row in ladder}
