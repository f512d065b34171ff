"""
Ladder Operations Module

Database side of the ranking engine. Loads a gauntlet's positions into a
RankingEngine snapshot, lets the engine mutate it, then writes positions and
progression rows back through the caller's session and verifies the ladder
before the transaction is allowed to commit.

All mutating methods expect to run under the gauntlet's lock; the LadderService
facade takes care of that.
"""

from datetime import date
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ladder.database.models import (
    Gauntlet, GauntletLineup, GauntletMatch, GauntletPosition, LadderProgression
)
from ladder.operations.ranking_engine import (
    RankingEngine, LadderEntry, ProgressionEntry, MatchUpdate
)
from ladder.operations.session_context import SessionContextMixin
from ladder.utils.exceptions import (
    ValidationError, NotFoundError, ConcurrencyConflictError, InvariantViolationError
)
from ladder.utils.logger import setup_logger, gauntlet_logger

logger = setup_logger(__name__)

_SNAPSHOT_FIELDS = (
    'position', 'previous_position', 'wins', 'losses', 'draws', 'total_matches',
    'win_rate', 'points', 'streak_type', 'streak_count', 'last_match_date'
)


class LadderOperations(SessionContextMixin):
    """
    Applies ranking engine results to persisted gauntlet ladders.
    """

    def __init__(self, database, engine: Optional[RankingEngine] = None,
                 today: Callable[[], date] = date.today):
        self.db = database
        self.engine = engine or RankingEngine()
        self.today = today
        self.logger = logger

    # ============================================================================
    # Snapshot conversion
    # ============================================================================

    async def _load_position_rows(self, session: AsyncSession, gauntlet_id: int) -> Dict[int, GauntletPosition]:
        result = await session.execute(
            select(GauntletPosition).where(GauntletPosition.gauntlet_id == gauntlet_id)
        )
        return {row.lineup_id: row for row in result.scalars().all()}

    @staticmethod
    def to_snapshot(rows: Dict[int, GauntletPosition]) -> Dict[int, LadderEntry]:
        return {
            lineup_id: LadderEntry(
                lineup_id=lineup_id,
                **{name: getattr(row, name) for name in _SNAPSHOT_FIELDS}
            )
            for lineup_id, row in rows.items()
        }

    async def _write_back(
        self,
        session: AsyncSession,
        gauntlet_id: int,
        rows: Dict[int, GauntletPosition],
        snapshot: Dict[int, LadderEntry]
    ) -> None:
        """Create rows for new entries and copy changed fields onto existing ones"""
        for lineup_id, entry in snapshot.items():
            row = rows.get(lineup_id)
            if row is None:
                row = GauntletPosition(
                    gauntlet_id=gauntlet_id,
                    lineup_id=lineup_id,
                    joined_date=self.today()
                )
                for name in _SNAPSHOT_FIELDS:
                    setattr(row, name, getattr(entry, name))
                session.add(row)
                rows[lineup_id] = row
                continue

            # Only assign real changes so untouched rows keep their version
            for name in _SNAPSHOT_FIELDS:
                value = getattr(entry, name)
                if getattr(row, name) != value:
                    setattr(row, name, value)

    def _append_progressions(
        self,
        session: AsyncSession,
        gauntlet_id: int,
        entries: List[ProgressionEntry]
    ) -> List[LadderProgression]:
        progressions = []
        for entry in entries:
            progression = LadderProgression(
                gauntlet_id=gauntlet_id,
                lineup_id=entry.lineup_id,
                from_position=entry.from_position,
                to_position=entry.to_position,
                change=entry.change,
                reason=entry.reason,
                match_id=entry.match_id,
                notes=entry.notes
            )
            session.add(progression)
            progressions.append(progression)
        return progressions

    async def _flush(self, session: AsyncSession, gauntlet_id: int) -> None:
        try:
            await session.flush()
        except StaleDataError as e:
            self.logger.warning(f"Stale position rows for gauntlet {gauntlet_id}: {e}")
            raise ConcurrencyConflictError(gauntlet_id, str(e)) from e

    # ============================================================================
    # Reads
    # ============================================================================

    async def get_ladder(self, gauntlet_id: int, session: Optional[AsyncSession] = None) -> List[GauntletPosition]:
        """Positions of a gauntlet ordered from the top of the ladder"""
        async with self._get_session_context(session) as s:
            await self._require_gauntlet(s, gauntlet_id)
            result = await s.execute(
                select(GauntletPosition)
                .where(GauntletPosition.gauntlet_id == gauntlet_id)
                .order_by(GauntletPosition.position)
            )
            return list(result.scalars().all())

    async def get_progression_history(
        self,
        gauntlet_id: int,
        lineup_id: Optional[int] = None,
        session: Optional[AsyncSession] = None
    ) -> List[LadderProgression]:
        """Progression log of a gauntlet (optionally one lineup) in replay order"""
        async with self._get_session_context(session) as s:
            await self._require_gauntlet(s, gauntlet_id)
            query = select(LadderProgression).where(LadderProgression.gauntlet_id == gauntlet_id)
            if lineup_id is not None:
                query = query.where(LadderProgression.lineup_id == lineup_id)
            query = query.order_by(LadderProgression.recorded_at, LadderProgression.id)
            result = await s.execute(query)
            return list(result.scalars().all())

    async def replay_ladder(self, gauntlet_id: int, session: Optional[AsyncSession] = None) -> Dict[int, int]:
        """lineup_id -> position rebuilt from the progression log alone"""
        progressions = await self.get_progression_history(gauntlet_id, session=session)
        return self.engine.replay(progressions)

    async def _require_gauntlet(self, session: AsyncSession, gauntlet_id: int) -> Gauntlet:
        gauntlet = await session.get(Gauntlet, gauntlet_id)
        if not gauntlet:
            raise NotFoundError("Gauntlet", gauntlet_id)
        return gauntlet

    # ============================================================================
    # Verification
    # ============================================================================

    async def verify(self, gauntlet_id: int, session: AsyncSession) -> None:
        """
        Check every ladder invariant against the flushed state of the session.

        Raises:
            InvariantViolationError: If any check fails; the caller's
                transaction must be rolled back
        """
        await self._flush(session, gauntlet_id)
        rows = await self._load_position_rows(session, gauntlet_id)
        replayed = await self.replay_ladder(gauntlet_id, session=session)
        violations = self.engine.check_invariants(self.to_snapshot(rows), replayed)
        if violations:
            gauntlet_logger(self.logger, gauntlet_id).critical(
                "ALERT: ladder invariants violated, rolling back: "
                + "; ".join(violations)
            )
            raise InvariantViolationError(gauntlet_id, violations)

    # ============================================================================
    # Mutations
    # ============================================================================

    async def apply_match(self, match: GauntletMatch, session: AsyncSession) -> MatchUpdate:
        """
        Run the ranking engine for a freshly recorded match and persist the result.

        Args:
            match: Flushed GauntletMatch (id assigned)
            session: Session of the enclosing transaction

        Returns:
            MatchUpdate describing outcomes, swap and emitted progressions
        """
        rows = await self._load_position_rows(session, match.gauntlet_id)
        snapshot = self.to_snapshot(rows)

        update = self.engine.apply_match(
            snapshot,
            match.lineup_a_id,
            match.lineup_b_id,
            match.sets_a,
            match.sets_b,
            match.total_sets,
            match.match_date,
            match_id=match.id
        )

        await self._write_back(session, match.gauntlet_id, rows, snapshot)
        self._append_progressions(session, match.gauntlet_id, update.progressions)
        await self.verify(match.gauntlet_id, session)

        self.logger.info(
            f"Applied match {match.id} to gauntlet {match.gauntlet_id}: "
            f"lineup {match.lineup_a_id} {update.outcome_a.value}, lineup {match.lineup_b_id} {update.outcome_b.value}"
            f"{' (positions swapped)' if update.swapped else ''}"
        )
        return update

    async def enter_lineup(
        self,
        gauntlet_id: int,
        lineup_id: int,
        notes: Optional[str] = None,
        session: Optional[AsyncSession] = None
    ) -> GauntletPosition:
        """Give a lineup its first position, at the bottom of the ladder"""
        async with self._get_session_context(session) as s:
            gauntlet = await self._require_gauntlet(s, gauntlet_id)
            if not gauntlet.is_active:
                raise ValidationError(f"Gauntlet {gauntlet_id} is {gauntlet.status.value}")

            lineup = await s.get(GauntletLineup, lineup_id)
            if not lineup:
                raise NotFoundError("Lineup", lineup_id)
            if lineup.gauntlet_id != gauntlet_id:
                raise ValidationError(f"Lineup {lineup_id} belongs to gauntlet {lineup.gauntlet_id}")
            if not lineup.is_active:
                raise ValidationError(f"Lineup {lineup_id} is inactive")

            rows = await self._load_position_rows(s, gauntlet_id)
            snapshot = self.to_snapshot(rows)
            progression = self.engine.enter_lineup(snapshot, lineup_id, notes=notes)

            await self._write_back(s, gauntlet_id, rows, snapshot)
            self._append_progressions(s, gauntlet_id, [progression])
            await self.verify(gauntlet_id, s)

            self.logger.info(f"Lineup {lineup_id} entered gauntlet {gauntlet_id} at position {progression.to_position}")
            return rows[lineup_id]

    async def manual_adjustment(
        self,
        gauntlet_id: int,
        lineup_id: int,
        target_position: int,
        notes: Optional[str] = None,
        session: Optional[AsyncSession] = None
    ) -> List[LadderProgression]:
        """Operator override moving one lineup to target_position"""
        async with self._get_session_context(session) as s:
            await self._require_gauntlet(s, gauntlet_id)
            rows = await self._load_position_rows(s, gauntlet_id)
            snapshot = self.to_snapshot(rows)

            entries = self.engine.apply_manual_adjustment(snapshot, lineup_id, target_position, notes)

            await self._write_back(s, gauntlet_id, rows, snapshot)
            progressions = self._append_progressions(s, gauntlet_id, entries)
            await self.verify(gauntlet_id, s)

            self.logger.info(
                f"Manual adjustment in gauntlet {gauntlet_id}: lineup {lineup_id} -> {target_position} "
                f"({len(progressions)} lineups moved)"
            )
            return progressions

    async def close_gap_and_reconcile(
        self,
        gauntlet_id: int,
        session: AsyncSession,
        removed_position: Optional[int] = None,
        notes: str = "Ladder re-densed"
    ) -> List[LadderProgression]:
        """
        After rows were deleted: close the gap left at removed_position (if any),
        then log a manual adjustment for every lineup whose replayed rank no
        longer matches its stored rank.
        """
        await self._flush(session, gauntlet_id)
        rows = await self._load_position_rows(session, gauntlet_id)
        snapshot = self.to_snapshot(rows)

        if removed_position is not None:
            shifted = self.engine.close_gap(snapshot, removed_position)
            if shifted:
                self.logger.info(f"Shifted {len(shifted)} lineups up in gauntlet {gauntlet_id}")

        replayed = await self.replay_ladder(gauntlet_id, session=session)
        entries = self.engine.reconcile(snapshot, replayed, notes)

        await self._write_back(session, gauntlet_id, rows, snapshot)
        progressions = self._append_progressions(session, gauntlet_id, entries)
        await self.verify(gauntlet_id, session)
        return progressions
