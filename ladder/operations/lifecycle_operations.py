"""
Lifecycle Operations Module

Cascading deletion for gauntlet ladder data. Rows are removed explicitly,
children first, so the ladder stays consistent regardless of whether the
store enforces ON DELETE CASCADE.

- delete_gauntlet(): progressions, positions, matches, lineups, gauntlet
- delete_lineup(): the lineup's progressions, position and matches, then the
  ladder below it moves up one place with manual_adjustment progressions
- delete_match(): the match and the progressions referencing it; statistics
  are kept, the log is reconciled so it still replays to the current ladder
"""

from typing import Any, Dict, Optional

from sqlalchemy import select, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ladder.database.models import (
    Gauntlet, GauntletLineup, GauntletMatch, GauntletPosition, LadderProgression
)
from ladder.operations.ladder_operations import LadderOperations
from ladder.operations.session_context import SessionContextMixin
from ladder.utils.exceptions import NotFoundError
from ladder.utils.logger import setup_logger

logger = setup_logger(__name__)


class LifecycleOperations(SessionContextMixin):
    """Deletion workflows that keep every ladder invariant intact."""

    def __init__(self, database, ladder_ops: Optional[LadderOperations] = None):
        self.db = database
        self.ladder_ops = ladder_ops or LadderOperations(database)
        self.logger = logger

    async def get_lineup_gauntlet_id(self, lineup_id: int, session: Optional[AsyncSession] = None) -> int:
        """Gauntlet owning a lineup, used to pick the lock before deleting"""
        async with self._get_session_context(session) as s:
            lineup = await s.get(GauntletLineup, lineup_id)
            if not lineup:
                raise NotFoundError("Lineup", lineup_id)
            return lineup.gauntlet_id

    async def get_match_gauntlet_id(self, match_id: int, session: Optional[AsyncSession] = None) -> int:
        """Gauntlet owning a match, used to pick the lock before deleting"""
        async with self._get_session_context(session) as s:
            match = await s.get(GauntletMatch, match_id)
            if not match:
                raise NotFoundError("Match", match_id)
            return match.gauntlet_id

    async def delete_gauntlet(self, gauntlet_id: int, session: Optional[AsyncSession] = None) -> Dict[str, Any]:
        """
        Remove a gauntlet and everything entered under it.

        Returns:
            Dictionary with the number of rows removed per table
        """
        async with self._get_session_context(session) as s:
            gauntlet = await s.get(Gauntlet, gauntlet_id)
            if not gauntlet:
                raise NotFoundError("Gauntlet", gauntlet_id)

            counts = {}
            for label, model in (
                ('progressions', LadderProgression),
                ('positions', GauntletPosition),
                ('matches', GauntletMatch),
                ('lineups', GauntletLineup),
            ):
                result = await s.execute(delete(model).where(model.gauntlet_id == gauntlet_id))
                counts[label] = result.rowcount or 0

            await s.execute(delete(Gauntlet).where(Gauntlet.id == gauntlet_id))

            self.logger.info(f"Deleted gauntlet {gauntlet_id}: {counts}")
            return {'gauntlet_id': gauntlet_id, 'deleted': counts}

    async def delete_lineup(self, lineup_id: int, session: Optional[AsyncSession] = None) -> Dict[str, Any]:
        """
        Remove a lineup from its gauntlet and close the gap it leaves.

        Matches the lineup raced are removed with it (they reference both crews),
        which also drops their progression rows for the opponent; reconciliation
        logs a manual adjustment wherever that leaves the log out of step.

        Returns:
            Dictionary with removed row counts and the adjustments emitted
        """
        async with self._get_session_context(session) as s:
            lineup = await s.get(GauntletLineup, lineup_id)
            if not lineup:
                raise NotFoundError("Lineup", lineup_id)
            gauntlet_id = lineup.gauntlet_id

            position_result = await s.execute(
                select(GauntletPosition.position).where(GauntletPosition.lineup_id == lineup_id)
            )
            removed_position = position_result.scalar_one_or_none()

            match_ids = select(GauntletMatch.id).where(or_(
                GauntletMatch.lineup_a_id == lineup_id,
                GauntletMatch.lineup_b_id == lineup_id
            ))

            counts = {}
            result = await s.execute(
                delete(LadderProgression).where(or_(
                    LadderProgression.lineup_id == lineup_id,
                    LadderProgression.match_id.in_(match_ids)
                ))
            )
            counts['progressions'] = result.rowcount or 0
            result = await s.execute(delete(GauntletPosition).where(GauntletPosition.lineup_id == lineup_id))
            counts['positions'] = result.rowcount or 0
            result = await s.execute(
                delete(GauntletMatch).where(or_(
                    GauntletMatch.lineup_a_id == lineup_id,
                    GauntletMatch.lineup_b_id == lineup_id
                ))
            )
            counts['matches'] = result.rowcount or 0

            await s.execute(delete(GauntletLineup).where(GauntletLineup.id == lineup_id))

            adjustments = await self.ladder_ops.close_gap_and_reconcile(
                gauntlet_id,
                s,
                removed_position=removed_position,
                notes=f"Lineup {lineup_id} removed from position {removed_position}"
            )

            self.logger.info(
                f"Deleted lineup {lineup_id} from gauntlet {gauntlet_id} "
                f"(position {removed_position}): {counts}, {len(adjustments)} adjustments"
            )
            return {
                'lineup_id': lineup_id,
                'gauntlet_id': gauntlet_id,
                'removed_position': removed_position,
                'deleted': counts,
                'adjustments': adjustments
            }

    async def delete_match(self, match_id: int, session: Optional[AsyncSession] = None) -> Dict[str, Any]:
        """
        Purge a match and its progression rows without undoing its effect on
        the ladder. Statistics stay as they are.

        Returns:
            Dictionary with removed row counts and the adjustments emitted
        """
        async with self._get_session_context(session) as s:
            match = await s.get(GauntletMatch, match_id)
            if not match:
                raise NotFoundError("Match", match_id)
            gauntlet_id = match.gauntlet_id

            result = await s.execute(delete(LadderProgression).where(LadderProgression.match_id == match_id))
            progressions_deleted = result.rowcount or 0
            await s.execute(delete(GauntletMatch).where(GauntletMatch.id == match_id))

            adjustments = await self.ladder_ops.close_gap_and_reconcile(
                gauntlet_id,
                s,
                notes=f"Position retained after match {match_id} was purged"
            )

            self.logger.info(
                f"Deleted match {match_id} from gauntlet {gauntlet_id}: "
                f"{progressions_deleted} progressions removed, {len(adjustments)} adjustments"
            )
            return {
                'match_id': match_id,
                'gauntlet_id': gauntlet_id,
                'deleted': {'matches': 1, 'progressions': progressions_deleted},
                'adjustments': adjustments
            }
