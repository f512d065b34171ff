"""
Ranking Engine Module

Pure challenge-ladder calculations shared by match recording, manual
adjustments, lineup removal and replay. Nothing in here touches the database:
the operations layer loads a ladder snapshot into LadderEntry objects, hands it
to the engine, and writes the mutated entries and emitted ProgressionEntry
records back inside its own transaction.

Key functionality:
- apply_match(): stats, streaks, points and the challenge-ladder swap
- enter_lineup(): append a lineup at the bottom of the ladder
- apply_manual_adjustment(): move a lineup to a target rank
- close_gap(): re-dense the ladder after a lineup leaves
- replay(): rebuild lineup -> position from the progression log
- check_invariants(): verify a snapshot before it is committed
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Tuple, Iterable

from ladder.constants import ScoringConstants
from ladder.database.models import MatchOutcome, StreakType, ProgressionReason
from ladder.utils.exceptions import ValidationError


@dataclass
class ScoringPolicy:
    """Points awarded per outcome. Forfeits always use forfeit_points."""
    win_points: int = ScoringConstants.WIN_POINTS
    draw_points: int = ScoringConstants.DRAW_POINTS
    loss_points: int = ScoringConstants.LOSS_POINTS
    forfeit_points: int = ScoringConstants.FORFEIT_POINTS

    def points_for(self, outcome: MatchOutcome, forfeit: bool = False) -> int:
        if forfeit:
            return self.forfeit_points
        if outcome == MatchOutcome.WIN:
            return self.win_points
        elif outcome == MatchOutcome.DRAW:
            return self.draw_points
        elif outcome == MatchOutcome.LOSS:
            return self.loss_points
        raise ValueError(f"Unsupported outcome: {outcome}")


@dataclass
class LadderEntry:
    """Snapshot of one lineup's standing, detached from the ORM row"""
    lineup_id: int
    position: int
    previous_position: Optional[int] = None
    wins: int = 0
    losses: int = 0
    draws: int = 0
    total_matches: int = 0
    win_rate: float = 0.0
    points: int = 0
    streak_type: StreakType = StreakType.NONE
    streak_count: int = 0
    last_match_date: Optional[date] = None


@dataclass
class ProgressionEntry:
    """A rank change to be appended to the progression log"""
    lineup_id: int
    from_position: int
    to_position: int
    reason: ProgressionReason
    match_id: Optional[int] = None
    notes: Optional[str] = None

    @property
    def change(self) -> int:
        return self.from_position - self.to_position


@dataclass
class MatchUpdate:
    """Result of applying one match to a ladder snapshot"""
    outcome_a: MatchOutcome
    outcome_b: MatchOutcome
    swapped: bool
    progressions: List[ProgressionEntry] = field(default_factory=list)


_OUTCOME_TO_STREAK = {
    MatchOutcome.WIN: StreakType.WIN,
    MatchOutcome.LOSS: StreakType.LOSS,
    MatchOutcome.DRAW: StreakType.DRAW,
}

_OUTCOME_TO_REASON = {
    MatchOutcome.WIN: ProgressionReason.MATCH_WIN,
    MatchOutcome.LOSS: ProgressionReason.MATCH_LOSS,
    MatchOutcome.DRAW: ProgressionReason.MATCH_DRAW,
}


class RankingEngine:
    """
    Challenge-ladder rules for a single gauntlet.

    A snapshot is a dict of lineup_id -> LadderEntry. Every method mutates the
    snapshot in place and returns the progression entries it produced.
    """

    def __init__(self, scoring_policy: Optional[ScoringPolicy] = None):
        self.scoring_policy = scoring_policy or ScoringPolicy()

    # ------------------------------------------------------------------
    # Statistics helpers
    # ------------------------------------------------------------------

    @staticmethod
    def determine_outcomes(sets_a: int, sets_b: int) -> Tuple[MatchOutcome, MatchOutcome]:
        """Side with strictly more set wins wins, equal counts draw"""
        if sets_a > sets_b:
            return MatchOutcome.WIN, MatchOutcome.LOSS
        if sets_b > sets_a:
            return MatchOutcome.LOSS, MatchOutcome.WIN
        return MatchOutcome.DRAW, MatchOutcome.DRAW

    @staticmethod
    def calculate_win_rate(wins: int, total_matches: int) -> float:
        if total_matches <= 0:
            return 0.0
        return round(wins / total_matches * 100, ScoringConstants.WIN_RATE_DECIMALS)

    def apply_outcome(
        self,
        entry: LadderEntry,
        outcome: MatchOutcome,
        match_date: date,
        forfeit: bool = False
    ) -> None:
        """Update record, win rate, streak and points for one participant"""
        if outcome == MatchOutcome.WIN:
            entry.wins += 1
        elif outcome == MatchOutcome.LOSS:
            entry.losses += 1
        elif outcome == MatchOutcome.DRAW:
            entry.draws += 1
        else:
            raise ValueError(f"Unsupported outcome: {outcome}")

        entry.total_matches += 1
        entry.win_rate = self.calculate_win_rate(entry.wins, entry.total_matches)

        streak = _OUTCOME_TO_STREAK[outcome]
        if entry.streak_type == streak:
            entry.streak_count += 1
        else:
            entry.streak_type = streak
            entry.streak_count = 1

        entry.points += self.scoring_policy.points_for(outcome, forfeit)

        if entry.last_match_date is None or match_date > entry.last_match_date:
            entry.last_match_date = match_date

    # ------------------------------------------------------------------
    # Positional rules
    # ------------------------------------------------------------------

    @staticmethod
    def max_position(snapshot: Dict[int, LadderEntry]) -> int:
        return max((entry.position for entry in snapshot.values()), default=0)

    def enter_lineup(
        self,
        snapshot: Dict[int, LadderEntry],
        lineup_id: int,
        notes: Optional[str] = None
    ) -> ProgressionEntry:
        """Append a lineup at current_max_position + 1"""
        if lineup_id in snapshot:
            raise ValidationError(f"Lineup {lineup_id} already holds a position on this ladder")

        bottom = self.max_position(snapshot) + 1
        snapshot[lineup_id] = LadderEntry(lineup_id=lineup_id, position=bottom)
        return ProgressionEntry(
            lineup_id=lineup_id,
            from_position=bottom,
            to_position=bottom,
            reason=ProgressionReason.NEW_LINEUP,
            notes=notes or "Entered ladder"
        )

    def apply_match(
        self,
        snapshot: Dict[int, LadderEntry],
        lineup_a_id: int,
        lineup_b_id: int,
        sets_a: int,
        sets_b: int,
        total_sets: int,
        match_date: date,
        match_id: Optional[int] = None
    ) -> MatchUpdate:
        """
        Apply one match result to the snapshot.

        Lineups without a position are entered at the bottom first (side A
        before side B). Then both records are updated, and a lower-ranked
        winner swaps ranks with the higher-ranked loser. Only lineups whose
        rank changed get a match progression.

        Args:
            snapshot: lineup_id -> LadderEntry for the whole gauntlet
            lineup_a_id, lineup_b_id: the two participants
            sets_a, sets_b: set wins per side
            total_sets: sets contested; 0 is a forfeit
            match_date: date the match was rowed
            match_id: persisted match id for the progression rows

        Returns:
            MatchUpdate with outcomes and the progressions to append
        """
        if lineup_a_id == lineup_b_id:
            raise ValidationError("A lineup cannot race itself")

        update = MatchUpdate(outcome_a=MatchOutcome.DRAW, outcome_b=MatchOutcome.DRAW, swapped=False)

        for lineup_id in (lineup_a_id, lineup_b_id):
            if lineup_id not in snapshot:
                update.progressions.append(self.enter_lineup(snapshot, lineup_id, notes="Entered ladder as challenger"))

        forfeit = total_sets == 0
        if forfeit:
            outcome_a, outcome_b = MatchOutcome.DRAW, MatchOutcome.DRAW
        else:
            outcome_a, outcome_b = self.determine_outcomes(sets_a, sets_b)
        update.outcome_a, update.outcome_b = outcome_a, outcome_b

        entry_a = snapshot[lineup_a_id]
        entry_b = snapshot[lineup_b_id]
        self.apply_outcome(entry_a, outcome_a, match_date, forfeit)
        self.apply_outcome(entry_b, outcome_b, match_date, forfeit)

        if outcome_a == MatchOutcome.DRAW:
            return update

        if outcome_a == MatchOutcome.WIN:
            winner, loser = entry_a, entry_b
        else:
            winner, loser = entry_b, entry_a

        # Higher-ranked winner keeps the ladder as it is
        if winner.position < loser.position:
            return update

        winner_from, loser_from = winner.position, loser.position
        winner.previous_position, loser.previous_position = winner_from, loser_from
        winner.position, loser.position = loser_from, winner_from
        update.swapped = True

        note = f"Challenge swap {winner_from}<->{loser_from}"
        update.progressions.append(ProgressionEntry(
            lineup_id=winner.lineup_id,
            from_position=winner_from,
            to_position=winner.position,
            reason=_OUTCOME_TO_REASON[MatchOutcome.WIN],
            match_id=match_id,
            notes=note
        ))
        update.progressions.append(ProgressionEntry(
            lineup_id=loser.lineup_id,
            from_position=loser_from,
            to_position=loser.position,
            reason=_OUTCOME_TO_REASON[MatchOutcome.LOSS],
            match_id=match_id,
            notes=note
        ))
        return update

    def apply_manual_adjustment(
        self,
        snapshot: Dict[int, LadderEntry],
        lineup_id: int,
        target_position: int,
        notes: Optional[str] = None
    ) -> List[ProgressionEntry]:
        """Move a lineup to target_position, shifting the lineups in between by one"""
        if lineup_id not in snapshot:
            raise ValidationError(f"Lineup {lineup_id} holds no position on this ladder")

        size = len(snapshot)
        if target_position < 1 or target_position > size:
            raise ValidationError(f"Target position {target_position} is outside 1..{size}")

        moving = snapshot[lineup_id]
        current = moving.position
        if current == target_position:
            return []

        moves: Dict[int, Tuple[int, int]] = {}
        for entry in snapshot.values():
            if entry.lineup_id == lineup_id:
                continue
            if target_position < current and target_position <= entry.position < current:
                moves[entry.lineup_id] = (entry.position, entry.position + 1)
            elif current < target_position and current < entry.position <= target_position:
                moves[entry.lineup_id] = (entry.position, entry.position - 1)
        moves[lineup_id] = (current, target_position)

        return self._apply_moves(snapshot, moves, notes or "Manual adjustment")

    def close_gap(
        self,
        snapshot: Dict[int, LadderEntry],
        removed_position: int
    ) -> Dict[int, Tuple[int, int]]:
        """
        Shift every lineup below removed_position up by one.

        The removed lineup must already be gone from the snapshot. Returns
        lineup_id -> (old, new) for the shifted lineups; progression rows are
        produced by reconciliation against the log, not here.
        """
        shifted = {}
        for entry in sorted(snapshot.values(), key=lambda e: e.position):
            if entry.position > removed_position:
                old = entry.position
                entry.previous_position = old
                entry.position = old - 1
                shifted[entry.lineup_id] = (old, entry.position)
        return shifted

    @staticmethod
    def _apply_moves(
        snapshot: Dict[int, LadderEntry],
        moves: Dict[int, Tuple[int, int]],
        notes: str
    ) -> List[ProgressionEntry]:
        progressions = []
        for moved_id, (old, new) in sorted(moves.items(), key=lambda item: item[1][1]):
            entry = snapshot[moved_id]
            entry.previous_position = old
            entry.position = new
            progressions.append(ProgressionEntry(
                lineup_id=moved_id,
                from_position=old,
                to_position=new,
                reason=ProgressionReason.MANUAL_ADJUSTMENT,
                notes=notes
            ))
        return progressions

    # ------------------------------------------------------------------
    # Replay and verification
    # ------------------------------------------------------------------

    @staticmethod
    def replay(progressions: Iterable) -> Dict[int, int]:
        """
        Rebuild lineup_id -> position from progression rows in log order.

        Accepts ORM rows or ProgressionEntry objects; both expose lineup_id
        and to_position.
        """
        positions: Dict[int, int] = {}
        for progression in progressions:
            positions[progression.lineup_id] = progression.to_position
        return positions

    def reconcile(
        self,
        snapshot: Dict[int, LadderEntry],
        replayed: Dict[int, int],
        notes: str
    ) -> List[ProgressionEntry]:
        """
        Emit manual adjustments for lineups whose replayed rank disagrees
        with their stored rank, so the log replays to the snapshot again.
        """
        progressions = []
        for entry in sorted(snapshot.values(), key=lambda e: e.position):
            replayed_position = replayed.get(entry.lineup_id)
            if replayed_position == entry.position:
                continue
            from_position = replayed_position if replayed_position is not None else entry.position
            progressions.append(ProgressionEntry(
                lineup_id=entry.lineup_id,
                from_position=from_position,
                to_position=entry.position,
                reason=ProgressionReason.MANUAL_ADJUSTMENT,
                notes=notes
            ))
        return progressions

    def check_invariants(
        self,
        snapshot: Dict[int, LadderEntry],
        replayed: Optional[Dict[int, int]] = None
    ) -> List[str]:
        """Return a list of human-readable violations, empty when consistent"""
        violations = []

        positions = sorted(entry.position for entry in snapshot.values())
        if positions != list(range(1, len(positions) + 1)):
            violations.append(f"positions {positions} are not dense 1..{len(positions)}")

        for entry in snapshot.values():
            label = f"lineup {entry.lineup_id}"
            if entry.total_matches != entry.wins + entry.losses + entry.draws:
                violations.append(
                    f"{label}: total_matches {entry.total_matches} != "
                    f"{entry.wins}+{entry.losses}+{entry.draws}"
                )
            expected_rate = self.calculate_win_rate(entry.wins, entry.total_matches)
            if entry.win_rate != expected_rate:
                violations.append(f"{label}: win_rate {entry.win_rate} != {expected_rate}")
            if entry.streak_type == StreakType.NONE:
                if entry.streak_count != 0 or entry.total_matches != 0:
                    violations.append(f"{label}: streak 'none' with count {entry.streak_count} after {entry.total_matches} matches")
            elif entry.streak_count < 1:
                violations.append(f"{label}: streak '{entry.streak_type.value}' with count {entry.streak_count}")

        if replayed is not None:
            current = {entry.lineup_id: entry.position for entry in snapshot.values()}
            if replayed != current:
                violations.append(f"progression replay {replayed} != ladder {current}")

        return violations
