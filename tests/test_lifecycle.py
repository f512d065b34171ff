"""
Tests for manual adjustments and the cascading delete workflows.
"""

import asyncio
from datetime import date

import pytest
from sqlalchemy import select, func

from conftest import seed_gauntlet, positions_by_lineup
from ladder.database.models import (
    Gauntlet, GauntletLineup, GauntletMatch, GauntletPosition, LadderProgression,
    ProgressionReason
)
from ladder.utils.exceptions import ValidationError, NotFoundError

MATCH_DAY = date(2025, 5, 20)


async def row_count(service, model, gauntlet_id):
    id_column = model.id if model is Gauntlet else model.gauntlet_id
    async with service.get_session() as session:
        result = await session.execute(select(func.count()).select_from(model).where(id_column == gauntlet_id))
        return result.scalar_one()


def test_manual_adjustment_moves_lineup_and_logs_every_shift(ladder_env):
    async def scenario():
        async with ladder_env() as service:
            gauntlet, lineups = await seed_gauntlet(service, 4)
            bottom = lineups[3]

            progressions = await service.manual_adjustment(gauntlet.id, bottom.id, 1, notes="Seat racing")

            assert len(progressions) == 4
            assert all(p.reason == ProgressionReason.MANUAL_ADJUSTMENT for p in progressions)
            ladder = await positions_by_lineup(service, gauntlet.id)
            assert [ladder[lineup.id].position for lineup in lineups] == [2, 3, 4, 1]
            assert ladder[bottom.id].previous_position == 4
            assert await service.replay_ladder(gauntlet.id) == {
                lineup.id: ladder[lineup.id].position for lineup in lineups
            }

    asyncio.run(scenario())


def test_manual_adjustment_out_of_range_changes_nothing(ladder_env):
    async def scenario():
        async with ladder_env() as service:
            gauntlet, lineups = await seed_gauntlet(service, 3)
            before = await service.get_progression_history(gauntlet.id)

            for target in (0, 4):
                with pytest.raises(ValidationError):
                    await service.manual_adjustment(gauntlet.id, lineups[0].id, target)

            ladder = await positions_by_lineup(service, gauntlet.id)
            assert [ladder[lineup.id].position for lineup in lineups] == [1, 2, 3]
            assert len(await service.get_progression_history(gauntlet.id)) == len(before)

    asyncio.run(scenario())


def test_deleting_a_lineup_redenses_the_ladder(ladder_env):
    async def scenario():
        async with ladder_env() as service:
            gauntlet, lineups = await seed_gauntlet(service, 5)
            removed = lineups[1]

            result = await service.delete_lineup(removed.id)

            assert result['removed_position'] == 2
            ladder = await positions_by_lineup(service, gauntlet.id)
            assert sorted(row.position for row in ladder.values()) == [1, 2, 3, 4]
            assert removed.id not in ladder
            assert [ladder[lineup.id].position for lineup in lineups if lineup is not removed] == [1, 2, 3, 4]

            adjustments = result['adjustments']
            assert len(adjustments) == 3
            assert {p.lineup_id for p in adjustments} == {lineups[2].id, lineups[3].id, lineups[4].id}
            assert all(p.reason == ProgressionReason.MANUAL_ADJUSTMENT and p.change == 1 for p in adjustments)

            history = await service.get_progression_history(gauntlet.id)
            assert not [p for p in history if p.lineup_id == removed.id]
            assert await service.verify_ladder(gauntlet.id) == []

    asyncio.run(scenario())


def test_deleting_a_lineup_removes_its_matches(ladder_env):
    async def scenario():
        async with ladder_env() as service:
            gauntlet, (first, second, third) = await seed_gauntlet(service, 3)
            # Third climbs over second, then second is removed
            await service.record_match(gauntlet.id, third.id, second.id, 2, 0, 2, MATCH_DAY)

            await service.delete_lineup(second.id)

            assert await service.get_match_history(gauntlet.id) == []
            ladder = await positions_by_lineup(service, gauntlet.id)
            assert ladder[first.id].position == 1
            assert ladder[third.id].position == 2
            # Statistics from the removed match stay with the survivor
            assert ladder[third.id].wins == 1
            assert await service.replay_ladder(gauntlet.id) == {first.id: 1, third.id: 2}

    asyncio.run(scenario())


def test_deleting_a_match_keeps_positions_and_statistics(ladder_env):
    async def scenario():
        async with ladder_env() as service:
            gauntlet, (first, second) = await seed_gauntlet(service, 2)
            result = await service.record_match(gauntlet.id, second.id, first.id, 3, 0, 3, MATCH_DAY)
            assert result.swapped

            deleted = await service.delete_match(result.match_id)

            assert deleted['deleted'] == {'matches': 1, 'progressions': 2}
            ladder = await positions_by_lineup(service, gauntlet.id)
            assert ladder[second.id].position == 1
            assert ladder[first.id].position == 2
            assert ladder[second.id].wins == 1

            history = await service.get_progression_history(gauntlet.id)
            assert not [p for p in history if p.match_id == result.match_id]
            assert [p.reason for p in deleted['adjustments']] == [ProgressionReason.MANUAL_ADJUSTMENT] * 2
            assert await service.verify_ladder(gauntlet.id) == []

            with pytest.raises(NotFoundError):
                await service.delete_match(result.match_id)

    asyncio.run(scenario())


def test_deleting_a_match_without_moves_needs_no_adjustment(ladder_env):
    async def scenario():
        async with ladder_env() as service:
            gauntlet, (first, second) = await seed_gauntlet(service, 2)
            result = await service.record_match(gauntlet.id, first.id, second.id, 2, 1, 3, MATCH_DAY)

            deleted = await service.delete_match(result.match_id)

            assert deleted['adjustments'] == []
            assert deleted['deleted']['progressions'] == 0

    asyncio.run(scenario())


def test_deleting_a_gauntlet_leaves_no_orphans(ladder_env):
    async def scenario():
        async with ladder_env() as service:
            gauntlet, (first, second, third) = await seed_gauntlet(service, 3)
            keep, (kept_lineup,) = await seed_gauntlet(service, 1, boat_type="1x")
            await service.record_match(gauntlet.id, third.id, first.id, 2, 1, 3, MATCH_DAY)

            result = await service.delete_gauntlet(gauntlet.id)

            assert result['deleted']['lineups'] == 3
            assert gauntlet.id not in service.locks._locks
            assert result['deleted']['matches'] == 1
            for model in (Gauntlet, GauntletLineup, GauntletMatch, GauntletPosition, LadderProgression):
                assert await row_count(service, model, gauntlet.id) == 0

            with pytest.raises(NotFoundError):
                await service.get_ladder(gauntlet.id)
            with pytest.raises(NotFoundError):
                await service.delete_gauntlet(gauntlet.id)

            # Other gauntlets are untouched
            assert [row.lineup_id for row in await service.get_ladder(keep.id)] == [kept_lineup.id]

    asyncio.run(scenario())


def test_delete_unknown_lineup(ladder_env):
    async def scenario():
        async with ladder_env() as service:
            with pytest.raises(NotFoundError):
                await service.delete_lineup(424242)

    asyncio.run(scenario())
