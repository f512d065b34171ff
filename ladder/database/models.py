"""
Gauntlet ladder models.

A Gauntlet is a boat-class competition. Lineups (crews) are entered into it,
race each other in Matches, and hold one Position on the Gauntlet's ladder.
Every change of a Position's rank is written to the append-only
LadderProgression log.
"""

from sqlalchemy import (
    Column, Integer, String, Date, DateTime, Boolean, Text, Float,
    ForeignKey, Enum as SQLEnum, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import date, datetime
from enum import Enum
from typing import Optional

Base = declarative_base()

class GauntletStatus(Enum):
    ACTIVE = "active"
    CLOSED = "closed"

class BoatType(Enum):
    SINGLE = "1x"
    DOUBLE = "2x"
    PAIR = "2-"
    QUAD = "4x"
    FOUR = "4+"
    EIGHT = "8+"

class MatchOutcome(Enum):
    WIN = "win"
    LOSS = "loss"
    DRAW = "draw"

class StreakType(Enum):
    WIN = "win"
    LOSS = "loss"
    DRAW = "draw"
    NONE = "none"

class ProgressionReason(Enum):
    MATCH_WIN = "match_win"
    MATCH_LOSS = "match_loss"
    MATCH_DRAW = "match_draw"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    NEW_LINEUP = "new_lineup"

def _enum_values(enum_cls):
    return [member.value for member in enum_cls]

class Gauntlet(Base):
    __tablename__ = 'gauntlets'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    boat_type = Column(SQLEnum(BoatType, values_callable=_enum_values), nullable=False)
    created_by = Column(String(64), nullable=True)  # External athlete reference
    status = Column(
        SQLEnum(GauntletStatus, values_callable=_enum_values),
        nullable=False, default=GauntletStatus.ACTIVE
    )

    # Metadata
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    lineups = relationship("GauntletLineup", back_populates="gauntlet", cascade="all, delete-orphan")
    matches = relationship("GauntletMatch", back_populates="gauntlet", cascade="all, delete-orphan")
    positions = relationship("GauntletPosition", back_populates="gauntlet", cascade="all, delete-orphan")
    progressions = relationship("LadderProgression", back_populates="gauntlet", cascade="all, delete-orphan")

    @property
    def is_active(self) -> bool:
        return self.status == GauntletStatus.ACTIVE

    def __repr__(self):
        return f"<Gauntlet(id={self.id}, name='{self.name}', boat_type='{self.boat_type.value}')>"

class GauntletLineup(Base):
    __tablename__ = 'gauntlet_lineups'

    id = Column(Integer, primary_key=True)
    gauntlet_id = Column(Integer, ForeignKey('gauntlets.id', ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(200))

    # Home lineup vs challenger lineups
    is_user_lineup = Column(Boolean, nullable=False, default=False)

    # Links to seat assignment data owned by the surrounding application
    boat_id = Column(String(64), nullable=True)
    saved_lineup_id = Column(String(64), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    gauntlet = relationship("Gauntlet", back_populates="lineups")
    position = relationship(
        "GauntletPosition", back_populates="lineup", uselist=False,
        cascade="all, delete-orphan", passive_deletes=True
    )
    progressions = relationship(
        "LadderProgression", back_populates="lineup",
        cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self):
        return f"<GauntletLineup(id={self.id}, gauntlet_id={self.gauntlet_id}, name='{self.name}')>"

class GauntletMatch(Base):
    """
    One contest between two lineups of the same gauntlet.

    Immutable once the ranking engine has processed it. ``dedupe_key`` holds the
    normalized (lineup pair, date, optional caller token) key that makes
    resubmissions detectable.
    """
    __tablename__ = 'gauntlet_matches'

    id = Column(Integer, primary_key=True)
    gauntlet_id = Column(Integer, ForeignKey('gauntlets.id', ondelete='CASCADE'), nullable=False, index=True)
    lineup_a_id = Column(Integer, ForeignKey('gauntlet_lineups.id', ondelete='CASCADE'), nullable=False, index=True)
    lineup_b_id = Column(Integer, ForeignKey('gauntlet_lineups.id', ondelete='CASCADE'), nullable=False, index=True)

    # Result
    workout = Column(Text)
    total_sets = Column(Integer, nullable=False)
    sets_a = Column(Integer, nullable=False, default=0)
    sets_b = Column(Integer, nullable=False, default=0)
    match_date = Column(Date, nullable=False)
    notes = Column(Text)

    # Idempotency
    idempotency_key = Column(String(128), nullable=True)
    dedupe_key = Column(String(255), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    gauntlet = relationship("Gauntlet", back_populates="matches")
    lineup_a = relationship("GauntletLineup", foreign_keys=[lineup_a_id])
    lineup_b = relationship("GauntletLineup", foreign_keys=[lineup_b_id])
    progressions = relationship(
        "LadderProgression", back_populates="match",
        cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint('gauntlet_id', 'dedupe_key', name='uq_gauntlet_matches_dedupe'),
        CheckConstraint('lineup_a_id != lineup_b_id', name='ck_gauntlet_matches_distinct_lineups'),
        CheckConstraint('sets_a >= 0 AND sets_b >= 0 AND sets_a + sets_b <= total_sets',
                        name='ck_gauntlet_matches_set_counts'),
    )

    @property
    def is_forfeit(self) -> bool:
        return self.total_sets == 0

    @property
    def winner_lineup_id(self) -> Optional[int]:
        """Lineup with strictly more set wins, None on a draw"""
        if self.sets_a > self.sets_b:
            return self.lineup_a_id
        if self.sets_b > self.sets_a:
            return self.lineup_b_id
        return None

    def __repr__(self):
        return (f"<GauntletMatch(id={self.id}, {self.lineup_a_id} vs {self.lineup_b_id}, "
                f"{self.sets_a}-{self.sets_b}/{self.total_sets}, date={self.match_date})>")

class GauntletPosition(Base):
    __tablename__ = 'gauntlet_positions'

    id = Column(Integer, primary_key=True)
    gauntlet_id = Column(Integer, ForeignKey('gauntlets.id', ondelete='CASCADE'), nullable=False, index=True)
    lineup_id = Column(Integer, ForeignKey('gauntlet_lineups.id', ondelete='CASCADE'), nullable=False, index=True)

    # Ladder rank, 1 = top
    position = Column(Integer, nullable=False, index=True)
    previous_position = Column(Integer, nullable=True)

    # Record
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)
    win_rate = Column(Float, nullable=False, default=0.0)
    total_matches = Column(Integer, nullable=False, default=0)
    points = Column(Integer, nullable=False, default=0)

    # Streak tracking
    streak_type = Column(
        SQLEnum(StreakType, values_callable=_enum_values),
        nullable=False, default=StreakType.NONE
    )
    streak_count = Column(Integer, nullable=False, default=0)

    # Dates
    last_match_date = Column(Date, nullable=True)
    joined_date = Column(Date, nullable=False, default=date.today)
    last_updated = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Optimistic concurrency counter
    version = Column(Integer, nullable=False)

    # Relationships
    gauntlet = relationship("Gauntlet", back_populates="positions")
    lineup = relationship("GauntletLineup", back_populates="position")

    __table_args__ = (
        UniqueConstraint('gauntlet_id', 'lineup_id', name='uq_gauntlet_positions_lineup'),
        CheckConstraint('position >= 1', name='ck_gauntlet_positions_position'),
    )

    __mapper_args__ = {'version_id_col': version}

    @property
    def position_delta(self) -> int:
        """Places gained since the previous position (positive = climbed)"""
        if self.previous_position is None:
            return 0
        return self.previous_position - self.position

    def __repr__(self):
        return (f"<GauntletPosition(gauntlet_id={self.gauntlet_id}, lineup_id={self.lineup_id}, "
                f"position={self.position}, record={self.wins}-{self.losses}-{self.draws})>")

class LadderProgression(Base):
    """Append-only audit entry for one rank change of one lineup."""
    __tablename__ = 'ladder_progressions'

    id = Column(Integer, primary_key=True)
    gauntlet_id = Column(Integer, ForeignKey('gauntlets.id', ondelete='CASCADE'), nullable=False)
    lineup_id = Column(Integer, ForeignKey('gauntlet_lineups.id', ondelete='CASCADE'), nullable=False)
    from_position = Column(Integer, nullable=False)
    to_position = Column(Integer, nullable=False)
    change = Column(Integer, nullable=False)  # from - to, positive when climbing
    reason = Column(SQLEnum(ProgressionReason, values_callable=_enum_values), nullable=False)
    match_id = Column(Integer, ForeignKey('gauntlet_matches.id', ondelete='CASCADE'), nullable=True)
    notes = Column(Text)
    recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    gauntlet = relationship("Gauntlet", back_populates="progressions")
    lineup = relationship("GauntletLineup", back_populates="progressions")
    match = relationship("GauntletMatch", back_populates="progressions")

    __table_args__ = (
        Index('idx_ladder_progressions_gauntlet', 'gauntlet_id', 'recorded_at', 'id'),
        Index('idx_ladder_progressions_lineup', 'lineup_id'),
        Index('idx_ladder_progressions_match', 'match_id'),
    )

    def __repr__(self):
        return (f"<LadderProgression(lineup_id={self.lineup_id}, {self.from_position}->{self.to_position}, "
                f"reason={self.reason.value})>")
