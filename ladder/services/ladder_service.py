"""
Gauntlet ladder service.

Public entry point of the ranking engine. Each mutating call takes the
gauntlet's lock, opens one transaction, runs the match recorder / ranking
engine / lifecycle step inside it and commits only after the ladder
invariants have been verified. Lost optimistic-concurrency races are retried
as a whole; every other error reaches the caller untouched.
"""

import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.orm.exc import StaleDataError

from ladder.config import Config
from ladder.database.models import (
    BoatType, Gauntlet, GauntletLineup, GauntletMatch, GauntletPosition, GauntletStatus,
    LadderProgression, MatchOutcome
)
from ladder.operations.gauntlet_operations import GauntletOperations
from ladder.operations.ladder_operations import LadderOperations
from ladder.operations.lifecycle_operations import LifecycleOperations
from ladder.operations.match_operations import MatchOperations
from ladder.operations.ranking_engine import RankingEngine, ScoringPolicy, ProgressionEntry
from ladder.services.base import BaseService
from ladder.services.gauntlet_lock import GauntletLockManager
from ladder.utils.exceptions import (
    LadderError, ConcurrencyConflictError, InvariantViolationError
)
from ladder.utils.logger import setup_logger, gauntlet_logger

logger = setup_logger(__name__)


@dataclass
class MatchRecordResult:
    """What record_match committed"""
    match_id: int
    gauntlet_id: int
    outcome_a: MatchOutcome
    outcome_b: MatchOutcome
    swapped: bool
    progressions: List[ProgressionEntry] = field(default_factory=list)


@dataclass
class GauntletDetail:
    """A gauntlet together with its ladder, top first"""
    gauntlet: Gauntlet
    ladder: List[GauntletPosition] = field(default_factory=list)


class LadderService(BaseService):
    """Facade over gauntlet, match, ladder and lifecycle operations."""

    def __init__(
        self,
        database,
        lock_manager: Optional[GauntletLockManager] = None,
        scoring_policy: Optional[ScoringPolicy] = None,
        today: Callable[[], date] = date.today,
        max_retries: Optional[int] = None
    ):
        super().__init__(database.session_factory)
        self.db = database
        self.locks = lock_manager or GauntletLockManager()
        self.engine = RankingEngine(scoring_policy)
        self.max_retries = max_retries or Config.MAX_COMMIT_RETRIES

        self.gauntlet_ops = GauntletOperations(database)
        self.match_ops = MatchOperations(database, today=today)
        self.ladder_ops = LadderOperations(database, self.engine, today=today)
        self.lifecycle_ops = LifecycleOperations(database, self.ladder_ops)

    # ============================================================================
    # Mutation plumbing
    # ============================================================================

    async def _run_locked(self, gauntlet_id: int, operation: str, func: Callable) -> Any:
        """
        Run func(session) under the gauntlet lock in one transaction, retrying
        the whole attempt when a concurrent writer invalidated it.
        """
        async def attempt():
            async with self.locks.hold(gauntlet_id):
                try:
                    async with self.get_session() as session:
                        return await func(session)
                except StaleDataError as e:
                    raise ConcurrencyConflictError(gauntlet_id, str(e)) from e

        start_time = time.monotonic()
        try:
            result = await self.execute_with_retry(
                attempt,
                max_retries=self.max_retries,
                retry_on=(ConcurrencyConflictError,)
            )
            gauntlet_logger(logger, gauntlet_id).debug(f"{operation} took {time.monotonic() - start_time:.3f}s")
            return result
        except InvariantViolationError:
            # Already logged at CRITICAL by the ladder operations; never retried
            raise
        except LadderError as e:
            gauntlet_logger(logger, gauntlet_id).error(f"{operation} failed: {e}")
            raise

    # ============================================================================
    # Gauntlet and lineup setup
    # ============================================================================

    async def create_gauntlet(
        self,
        name: str,
        boat_type: Union[BoatType, str],
        created_by: Optional[str] = None,
        description: Optional[str] = None
    ) -> Gauntlet:
        async with self.get_session() as session:
            return await self.gauntlet_ops.create_gauntlet(
                name, boat_type, created_by=created_by, description=description, session=session
            )

    async def update_gauntlet(
        self,
        gauntlet_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        boat_type: Optional[Union[BoatType, str]] = None
    ) -> Gauntlet:
        return await self._run_locked(
            gauntlet_id, "update_gauntlet",
            lambda session: self.gauntlet_ops.update_gauntlet(
                gauntlet_id, name=name, description=description, boat_type=boat_type, session=session
            )
        )

    async def close_gauntlet(self, gauntlet_id: int) -> Gauntlet:
        return await self._run_locked(
            gauntlet_id, "close_gauntlet",
            lambda session: self.gauntlet_ops.close_gauntlet(gauntlet_id, session=session)
        )

    async def create_lineup(
        self,
        gauntlet_id: int,
        name: Optional[str] = None,
        is_user_lineup: bool = False,
        boat_id: Optional[str] = None,
        saved_lineup_id: Optional[str] = None,
        enter_ladder: bool = True
    ) -> GauntletLineup:
        """
        Register a lineup and, by default, enter it at the bottom of the ladder.

        Pass enter_ladder=False for a challenger that should only appear on the
        ladder once it races.
        """
        async def create(session):
            lineup = await self.gauntlet_ops.create_lineup(
                gauntlet_id, name=name, is_user_lineup=is_user_lineup,
                boat_id=boat_id, saved_lineup_id=saved_lineup_id, session=session
            )
            if enter_ladder:
                await self.ladder_ops.enter_lineup(gauntlet_id, lineup.id, session=session)
            return lineup

        return await self._run_locked(gauntlet_id, "create_lineup", create)

    async def set_lineup_active(self, lineup_id: int, is_active: bool) -> GauntletLineup:
        gauntlet_id = await self.lifecycle_ops.get_lineup_gauntlet_id(lineup_id)
        return await self._run_locked(
            gauntlet_id, "set_lineup_active",
            lambda session: self.gauntlet_ops.set_lineup_active(lineup_id, is_active, session=session)
        )

    async def enter_lineup(self, gauntlet_id: int, lineup_id: int, notes: Optional[str] = None) -> GauntletPosition:
        return await self._run_locked(
            gauntlet_id, "enter_lineup",
            lambda session: self.ladder_ops.enter_lineup(gauntlet_id, lineup_id, notes=notes, session=session)
        )

    # ============================================================================
    # Match recording
    # ============================================================================

    async def record_match(
        self,
        gauntlet_id: int,
        lineup_a_id: int,
        lineup_b_id: int,
        sets_a: int,
        sets_b: int,
        total_sets: int,
        match_date: date,
        notes: Optional[str] = None,
        workout: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> MatchRecordResult:
        """
        Record a match and apply it to the ladder atomically.

        Raises:
            ValidationError: If the match input is inconsistent
            DuplicateMatchError: If the same match was already recorded
            NotFoundError: If the gauntlet or a lineup does not exist
            ConcurrencyConflictError: If retries were exhausted
            InvariantViolationError: If the engine produced an inconsistent ladder
        """
        async def record(session):
            match = await self.match_ops.record_match(
                gauntlet_id, lineup_a_id, lineup_b_id, sets_a, sets_b, total_sets, match_date,
                notes=notes, workout=workout, idempotency_key=idempotency_key, session=session
            )
            update = await self.ladder_ops.apply_match(match, session)
            return MatchRecordResult(
                match_id=match.id,
                gauntlet_id=gauntlet_id,
                outcome_a=update.outcome_a,
                outcome_b=update.outcome_b,
                swapped=update.swapped,
                progressions=update.progressions
            )

        return await self._run_locked(gauntlet_id, "record_match", record)

    async def manual_adjustment(
        self,
        gauntlet_id: int,
        lineup_id: int,
        target_position: int,
        notes: Optional[str] = None
    ) -> List[LadderProgression]:
        """Operator override: move a lineup to target_position"""
        return await self._run_locked(
            gauntlet_id, "manual_adjustment",
            lambda session: self.ladder_ops.manual_adjustment(
                gauntlet_id, lineup_id, target_position, notes=notes, session=session
            )
        )

    # ============================================================================
    # Reads
    # ============================================================================

    async def list_gauntlets(
        self,
        created_by: Optional[str] = None,
        status: Optional[Union[GauntletStatus, str]] = None
    ) -> List[Gauntlet]:
        async with self.get_session() as session:
            return await self.gauntlet_ops.list_gauntlets(created_by=created_by, status=status, session=session)

    async def get_gauntlet(self, gauntlet_id: int) -> GauntletDetail:
        async with self.get_session() as session:
            gauntlet = await self.gauntlet_ops.get_gauntlet(gauntlet_id, session=session)
            ladder = await self.ladder_ops.get_ladder(gauntlet_id, session=session)
        return GauntletDetail(gauntlet=gauntlet, ladder=ladder)

    async def get_ladder(self, gauntlet_id: int) -> List[GauntletPosition]:
        async with self.get_session() as session:
            return await self.ladder_ops.get_ladder(gauntlet_id, session=session)

    async def get_progression_history(
        self,
        gauntlet_id: int,
        lineup_id: Optional[int] = None
    ) -> List[LadderProgression]:
        async with self.get_session() as session:
            return await self.ladder_ops.get_progression_history(gauntlet_id, lineup_id, session=session)

    async def get_match_history(self, gauntlet_id: int, lineup_id: Optional[int] = None) -> List[GauntletMatch]:
        async with self.get_session() as session:
            return await self.match_ops.get_matches(gauntlet_id, lineup_id, session=session)

    async def replay_ladder(self, gauntlet_id: int) -> Dict[int, int]:
        """lineup_id -> position rebuilt purely from the progression log"""
        async with self.get_session() as session:
            return await self.ladder_ops.replay_ladder(gauntlet_id, session=session)

    async def verify_ladder(self, gauntlet_id: int) -> List[str]:
        """Invariant violations of the committed ladder, empty when consistent"""
        async with self.get_session() as session:
            positions = await self.ladder_ops.get_ladder(gauntlet_id, session=session)
            replayed = await self.ladder_ops.replay_ladder(gauntlet_id, session=session)
        snapshot = LadderOperations.to_snapshot({row.lineup_id: row for row in positions})
        return self.engine.check_invariants(snapshot, replayed)

    # ============================================================================
    # Lifecycle
    # ============================================================================

    async def delete_gauntlet(self, gauntlet_id: int) -> Dict[str, Any]:
        result = await self._run_locked(
            gauntlet_id, "delete_gauntlet",
            lambda session: self.lifecycle_ops.delete_gauntlet(gauntlet_id, session=session)
        )
        self.locks.discard(gauntlet_id)
        return result

    async def delete_lineup(self, lineup_id: int) -> Dict[str, Any]:
        gauntlet_id = await self.lifecycle_ops.get_lineup_gauntlet_id(lineup_id)
        return await self._run_locked(
            gauntlet_id, "delete_lineup",
            lambda session: self.lifecycle_ops.delete_lineup(lineup_id, session=session)
        )

    async def delete_match(self, match_id: int) -> Dict[str, Any]:
        gauntlet_id = await self.lifecycle_ops.get_match_gauntlet_id(match_id)
        return await self._run_locked(
            gauntlet_id, "delete_match",
            lambda session: self.lifecycle_ops.delete_match(match_id, session=session)
        )
