"""
Tests for per-gauntlet serialization, optimistic concurrency and rollback on
invariant violations.
"""

import asyncio
from datetime import date

import pytest
from sqlalchemy import select

from conftest import seed_gauntlet, positions_by_lineup
from ladder.constants import LockConstants
from ladder.database.models import GauntletPosition
from ladder.services.gauntlet_lock import GauntletLockManager
from ladder.utils.exceptions import ConcurrencyConflictError, InvariantViolationError

MATCH_DAY = date(2025, 5, 20)


def test_concurrent_matches_in_one_gauntlet_serialize(ladder_env):
    async def scenario():
        async with ladder_env() as service:
            gauntlet, (first, second, third, fourth) = await seed_gauntlet(service, 4)

            active = 0
            max_active = 0
            original_apply = service.ladder_ops.apply_match

            async def slow_apply(match, session):
                nonlocal active, max_active
                active += 1
                max_active = max(max_active, active)
                try:
                    await asyncio.sleep(0.05)
                    return await original_apply(match, session)
                finally:
                    active -= 1

            service.ladder_ops.apply_match = slow_apply

            results = await asyncio.gather(
                service.record_match(gauntlet.id, second.id, first.id, 2, 1, 3, MATCH_DAY),
                service.record_match(gauntlet.id, fourth.id, third.id, 2, 0, 2, MATCH_DAY),
            )

            assert all(result.swapped for result in results)
            assert max_active == 1

            ladder = await positions_by_lineup(service, gauntlet.id)
            assert sorted(row.position for row in ladder.values()) == [1, 2, 3, 4]
            assert [ladder[l.id].position for l in (second, first, fourth, third)] == [1, 2, 3, 4]
            assert all(row.total_matches == 1 for row in ladder.values())
            assert await service.verify_ladder(gauntlet.id) == []

    asyncio.run(scenario())


def test_stale_position_row_raises_conflict(ladder_env):
    async def scenario():
        async with ladder_env() as service:
            gauntlet, (first, _) = await seed_gauntlet(service, 2)
            query = select(GauntletPosition).where(GauntletPosition.lineup_id == first.id)

            async with service.db.transaction() as winner_session:
                winner_row = (await winner_session.execute(query)).scalar_one()
                async with service.db.transaction() as loser_session:
                    loser_row = (await loser_session.execute(query)).scalar_one()

                    winner_row.points += 5
                    await winner_session.commit()

                    loser_row.points += 1
                    with pytest.raises(ConcurrencyConflictError):
                        await service.ladder_ops._flush(loser_session, gauntlet.id)
                    await loser_session.rollback()

            ladder = await positions_by_lineup(service, gauntlet.id)
            assert ladder[first.id].points == 5
            assert ladder[first.id].version == 2

    asyncio.run(scenario())


def test_conflict_is_retried_as_a_whole(ladder_env):
    async def scenario():
        async with ladder_env() as service:
            gauntlet, (first, second) = await seed_gauntlet(service, 2)

            calls = 0
            original_apply = service.ladder_ops.apply_match

            async def flaky_apply(match, session):
                nonlocal calls
                calls += 1
                if calls == 1:
                    raise ConcurrencyConflictError(gauntlet.id, "simulated lost race")
                return await original_apply(match, session)

            service.ladder_ops.apply_match = flaky_apply

            result = await service.record_match(gauntlet.id, second.id, first.id, 2, 0, 2, MATCH_DAY)

            assert calls == 2
            assert result.swapped
            matches = await service.get_match_history(gauntlet.id)
            assert [m.id for m in matches] == [result.match_id]

    asyncio.run(scenario())


def test_invariant_violation_rolls_back_and_is_not_retried(ladder_env):
    async def scenario():
        async with ladder_env() as service:
            gauntlet, (first, second) = await seed_gauntlet(service, 2)
            history_before = await service.get_progression_history(gauntlet.id)

            calls = 0
            original_check = service.engine.check_invariants

            def broken_check(snapshot, replayed=None):
                nonlocal calls
                calls += 1
                return ["forced violation"]

            service.engine.check_invariants = broken_check
            with pytest.raises(InvariantViolationError) as excinfo:
                await service.record_match(gauntlet.id, second.id, first.id, 2, 0, 2, MATCH_DAY)
            service.engine.check_invariants = original_check

            assert calls == 1
            assert excinfo.value.violations == ["forced violation"]
            assert await service.get_match_history(gauntlet.id) == []
            ladder = await positions_by_lineup(service, gauntlet.id)
            assert ladder[first.id].position == 1 and ladder[first.id].total_matches == 0
            assert len(await service.get_progression_history(gauntlet.id)) == len(history_before)

    asyncio.run(scenario())


def test_different_gauntlets_do_not_contend():
    async def scenario():
        locks = GauntletLockManager(timeout=1)
        async with locks.hold(1):
            assert locks.is_locked(1)
            async with locks.hold(2):
                assert locks.is_locked(2)
        assert not locks.is_locked(1)
        assert not locks.is_locked(2)

    asyncio.run(scenario())


def test_local_lock_timeout_raises_conflict():
    async def scenario():
        locks = GauntletLockManager(timeout=0.05)
        async with locks.hold(1):
            with pytest.raises(ConcurrencyConflictError):
                async with locks.hold(1):
                    pass

    asyncio.run(scenario())


def test_discard_drops_idle_locks_only():
    async def scenario():
        locks = GauntletLockManager(timeout=1)
        async with locks.hold(1):
            pass
        async with locks.hold(2):
            locks.discard(2)
            assert 2 in locks._locks
        locks.discard(1)
        locks.discard(3)

        assert 1 not in locks._locks
        assert 2 in locks._locks
        assert 3 not in locks._locks

    asyncio.run(scenario())


def test_redis_lock_is_taken_and_released(fake_redis):
    async def scenario():
        locks = GauntletLockManager(redis_client=fake_redis, timeout=1, expiry=10)
        key = f"{LockConstants.REDIS_LOCK_PREFIX}7"

        async with locks.hold(7):
            assert key in fake_redis.store
        assert key not in fake_redis.store

        await locks.close()
        assert fake_redis.closed

    asyncio.run(scenario())


def test_redis_lock_held_elsewhere_times_out(fake_redis):
    async def scenario():
        key = f"{LockConstants.REDIS_LOCK_PREFIX}3"
        fake_redis.store[key] = "other-process"
        locks = GauntletLockManager(redis_client=fake_redis, timeout=0.1, expiry=10)

        with pytest.raises(ConcurrencyConflictError):
            async with locks.hold(3):
                pass

        assert fake_redis.store[key] == "other-process"
        assert fake_redis.set_calls > 1
        assert not locks.is_locked(3)

    asyncio.run(scenario())


def test_expired_redis_lock_is_left_to_new_holder(fake_redis):
    async def scenario():
        key = f"{LockConstants.REDIS_LOCK_PREFIX}5"
        locks = GauntletLockManager(redis_client=fake_redis, timeout=1, expiry=10)

        async with locks.hold(5):
            # Our lock expired and another process took the key
            fake_redis.store[key] = "new-holder"

        assert fake_redis.store[key] == "new-holder"

    asyncio.run(scenario())


def test_service_records_through_redis_lock(ladder_env, fake_redis):
    async def scenario():
        locks = GauntletLockManager(redis_client=fake_redis, timeout=1, expiry=10)
        async with ladder_env(lock_manager=locks) as service:
            gauntlet, (first, second) = await seed_gauntlet(service, 2)
            set_calls_before = fake_redis.set_calls

            await service.record_match(gauntlet.id, second.id, first.id, 1, 0, 1, MATCH_DAY)

            assert fake_redis.set_calls == set_calls_before + 1
            assert fake_redis.store == {}

    asyncio.run(scenario())
