"""
Services package for the gauntlet ladder.

Service layer over the operations modules: transactions, retries and
per-gauntlet locking.
"""

from .base import BaseService
from .gauntlet_lock import GauntletLockManager
from .ladder_service import LadderService, MatchRecordResult

__all__ = ['BaseService', 'GauntletLockManager', 'LadderService', 'MatchRecordResult']
