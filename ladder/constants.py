"""
Ladder-wide constants for the gauntlet ranking engine.

Keeps scoring values and lock naming in one place so the engine, the
service layer and the tests agree on them.
"""

class ScoringConstants:
    """Default points awarded per match outcome."""
    
    WIN_POINTS = 2
    DRAW_POINTS = 1
    LOSS_POINTS = 0
    
    # Forfeits (zero sets contested) count as a draw but award nothing
    FORFEIT_POINTS = 0
    
    # win_rate is stored as a percentage with two decimals
    WIN_RATE_DECIMALS = 2

class LockConstants:
    """Constants for per-gauntlet serialization."""
    
    # Redis key prefix, the gauntlet id is appended
    REDIS_LOCK_PREFIX = "gauntlet_ladder_lock:"
    
    # Base delay for retry backoff (seconds)
    RETRY_BASE_DELAY = 0.1
