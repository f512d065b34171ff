"""
Match Operations Module

Validates and persists gauntlet match results. This is the only writer of
GauntletMatch rows; it never touches positions or progressions, which belong
to the ranking engine running in the same transaction right afterwards.

Rules enforced here:
- both lineups exist, are active and belong to the gauntlet being scored
- the gauntlet is still active
- set counts are non-negative and fit inside total_sets
- the match date is not in the future
- a match is recorded at most once per (lineup pair, date[, caller token]);
  a tokenless submission also collides with tokened ones of that pair and day
"""

from datetime import date, datetime
from typing import Callable, List, Optional

from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ladder.database.models import Gauntlet, GauntletLineup, GauntletMatch
from ladder.operations.session_context import SessionContextMixin
from ladder.utils.exceptions import (
    ValidationError, DuplicateMatchError, NotFoundError
)
from ladder.utils.logger import setup_logger

logger = setup_logger(__name__)


class MatchOperations(SessionContextMixin):
    """
    Match Recorder for gauntlet ladders.

    Provides validation and persistence of a single immutable match row.
    Callers running the full ranking flow pass their own session so the match
    and its ranking effects commit together.
    """

    def __init__(self, database, today: Callable[[], date] = date.today):
        """Initialize with database instance and an optional clock for date checks"""
        self.db = database
        self.today = today
        self.logger = logger

    @staticmethod
    def build_dedupe_key(
        lineup_a_id: int,
        lineup_b_id: int,
        match_date: date,
        idempotency_key: Optional[str] = None
    ) -> str:
        """Order-independent key for one pairing on one day, plus the caller token if any"""
        low, high = sorted((lineup_a_id, lineup_b_id))
        key = f"{low}:{high}:{match_date.isoformat()}"
        if idempotency_key:
            key = f"{key}:{idempotency_key}"
        return key

    async def _find_conflicting_match(
        self,
        session: AsyncSession,
        gauntlet_id: int,
        lineup_a_id: int,
        lineup_b_id: int,
        match_date: date,
        idempotency_key: Optional[str]
    ) -> Optional[int]:
        """
        Id of an already recorded match this submission repeats, if any.

        A tokenless submission repeats any match of the same pairing and day,
        tokened or not. A tokened one repeats the same token or a tokenless
        match of that pairing and day. Callers rowing a pairing several times
        a day must send a token with every one of them.
        """
        base_key = self.build_dedupe_key(lineup_a_id, lineup_b_id, match_date)
        if idempotency_key:
            key_filter = GauntletMatch.dedupe_key.in_(
                [base_key, self.build_dedupe_key(lineup_a_id, lineup_b_id, match_date, idempotency_key)]
            )
        else:
            key_filter = or_(
                GauntletMatch.dedupe_key == base_key,
                GauntletMatch.dedupe_key.like(f"{base_key}:%")
            )

        result = await session.execute(
            select(GauntletMatch.id)
            .where(GauntletMatch.gauntlet_id == gauntlet_id, key_filter)
            .order_by(GauntletMatch.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    def validate_match_input(
        self,
        lineup_a_id: int,
        lineup_b_id: int,
        sets_a: int,
        sets_b: int,
        total_sets: int,
        match_date: date
    ) -> None:
        """
        Check the shape of a match result before any lookup.

        Raises:
            ValidationError: describing the first problem found
        """
        if lineup_a_id == lineup_b_id:
            raise ValidationError("Both sides of a match must be different lineups")
        if total_sets is None or total_sets < 0:
            raise ValidationError(f"Total sets must be non-negative, got {total_sets}")
        if sets_a is None or sets_b is None or sets_a < 0 or sets_b < 0:
            raise ValidationError(f"Set wins must be non-negative, got {sets_a}-{sets_b}")
        if sets_a + sets_b > total_sets:
            raise ValidationError(
                f"Set wins {sets_a}+{sets_b} exceed the {total_sets} sets contested"
            )
        if not isinstance(match_date, date):
            raise ValidationError("Match date is required")
        if isinstance(match_date, datetime):
            raise ValidationError("Match date must be a calendar day, not a timestamp")
        if match_date > self.today():
            raise ValidationError(f"Match date {match_date.isoformat()} is in the future")

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
        idempotency_key: Optional[str] = None,
        session: Optional[AsyncSession] = None
    ) -> GauntletMatch:
        """
        Validate and persist one match between two lineups of a gauntlet.

        Args:
            gauntlet_id: Gauntlet the match is scored in
            lineup_a_id, lineup_b_id: The two crews
            sets_a, sets_b: Set wins per side
            total_sets: Sets contested (0 records a forfeit)
            match_date: Day the match was rowed
            notes: Free-text notes
            workout: Workout description, e.g. "4x500m"
            idempotency_key: Optional caller token widening the dedupe key
            session: Session of the enclosing transaction

        Returns:
            GauntletMatch: The flushed match row (id assigned)

        Raises:
            ValidationError: If the input is inconsistent
            NotFoundError: If the gauntlet or a lineup does not exist
            DuplicateMatchError: If the match was already recorded
        """
        self.validate_match_input(lineup_a_id, lineup_b_id, sets_a, sets_b, total_sets, match_date)

        async with self._get_session_context(session) as s:
            gauntlet = await s.get(Gauntlet, gauntlet_id)
            if not gauntlet:
                raise NotFoundError("Gauntlet", gauntlet_id)
            if not gauntlet.is_active:
                raise ValidationError(f"Gauntlet {gauntlet_id} is {gauntlet.status.value} and accepts no matches")

            for lineup_id in (lineup_a_id, lineup_b_id):
                lineup = await s.get(GauntletLineup, lineup_id)
                if not lineup:
                    raise NotFoundError("Lineup", lineup_id)
                if lineup.gauntlet_id != gauntlet_id:
                    raise ValidationError(
                        f"Lineup {lineup_id} belongs to gauntlet {lineup.gauntlet_id}, not {gauntlet_id}"
                    )
                if not lineup.is_active:
                    raise ValidationError(f"Lineup {lineup_id} is inactive")

            dedupe_key = self.build_dedupe_key(lineup_a_id, lineup_b_id, match_date, idempotency_key)
            existing_id = await self._find_conflicting_match(
                s, gauntlet_id, lineup_a_id, lineup_b_id, match_date, idempotency_key
            )
            if existing_id is not None:
                self.logger.info(f"Rejected duplicate match {dedupe_key} in gauntlet {gauntlet_id} (existing {existing_id})")
                raise DuplicateMatchError(gauntlet_id, dedupe_key, existing_id)

            match = GauntletMatch(
                gauntlet_id=gauntlet_id,
                lineup_a_id=lineup_a_id,
                lineup_b_id=lineup_b_id,
                workout=workout,
                total_sets=total_sets,
                sets_a=sets_a,
                sets_b=sets_b,
                match_date=match_date,
                notes=notes,
                idempotency_key=idempotency_key,
                dedupe_key=dedupe_key
            )
            s.add(match)
            try:
                await s.flush()  # Assign the match id for progression rows
            except IntegrityError as e:
                # Another process committed the same key between check and insert
                self.logger.warning(f"Dedupe key collision for {dedupe_key} in gauntlet {gauntlet_id}: {e}")
                raise DuplicateMatchError(gauntlet_id, dedupe_key) from e

            self.logger.info(
                f"Recorded match {match.id} in gauntlet {gauntlet_id}: "
                f"lineup {lineup_a_id} {sets_a}-{sets_b} lineup {lineup_b_id} ({total_sets} sets)"
            )
            return match

    async def get_matches(
        self,
        gauntlet_id: int,
        lineup_id: Optional[int] = None,
        session: Optional[AsyncSession] = None
    ) -> List[GauntletMatch]:
        """Matches of a gauntlet, optionally only those a lineup raced, oldest first"""
        async with self._get_session_context(session) as s:
            query = select(GauntletMatch).where(GauntletMatch.gauntlet_id == gauntlet_id)
            if lineup_id is not None:
                query = query.where(or_(
                    GauntletMatch.lineup_a_id == lineup_id,
                    GauntletMatch.lineup_b_id == lineup_id
                ))
            query = query.order_by(GauntletMatch.match_date, GauntletMatch.id)
            result = await s.execute(query)
            return list(result.scalars().all())
