"""Configuration and Redis URL handling"""

import asyncio

import pytest

from ladder.config import Config
from ladder.services.gauntlet_lock import GauntletLockManager
from ladder.utils.redis_utils import RedisUtils


def test_sqlite_url_uses_async_driver():
    assert Config.get_async_database_url('sqlite:///ladder.db') == 'sqlite+aiosqlite:///ladder.db'
    assert Config.get_async_database_url('sqlite+aiosqlite:///x.db') == 'sqlite+aiosqlite:///x.db'
    assert Config.get_async_database_url('postgresql+asyncpg://u@h/db') == 'postgresql+asyncpg://u@h/db'


def test_validate_rejects_bad_settings(monkeypatch):
    Config.validate()

    monkeypatch.setattr(Config, 'MAX_COMMIT_RETRIES', 0)
    with pytest.raises(ValueError):
        Config.validate()

    monkeypatch.setattr(Config, 'MAX_COMMIT_RETRIES', 3)
    monkeypatch.setattr(Config, 'REDIS_LOCKING', True)
    monkeypatch.setattr(Config, 'REDIS_URL', '')
    with pytest.raises(ValueError):
        Config.validate()


def test_production_redis_url_requires_tls_and_auth(monkeypatch):
    monkeypatch.setattr(Config, 'DEBUG', False)

    monkeypatch.setattr(Config, 'REDIS_URL', 'redis://cache:6379')
    assert RedisUtils.get_secure_redis_url() is None

    monkeypatch.setattr(Config, 'REDIS_URL', 'rediss://cache:6380')
    assert RedisUtils.get_secure_redis_url() is None

    monkeypatch.setattr(Config, 'REDIS_URL', 'rediss://:secret@cache:6380')
    assert RedisUtils.get_secure_redis_url() == 'rediss://:secret@cache:6380'

    monkeypatch.setattr(Config, 'REDIS_URL', '')
    assert RedisUtils.get_secure_redis_url() is None


def test_debug_falls_back_to_localhost(monkeypatch):
    monkeypatch.setattr(Config, 'DEBUG', True)
    monkeypatch.setattr(Config, 'REDIS_URL', '')
    assert RedisUtils.get_secure_redis_url() == 'redis://localhost:6379'


def test_lock_manager_without_redis_locking(monkeypatch):
    monkeypatch.setattr(Config, 'REDIS_LOCKING', False)

    locks = asyncio.run(GauntletLockManager.from_config())

    assert locks.redis_client is None
    assert locks.timeout == Config.LOCK_TIMEOUT_SECONDS
