"""
Operations Layer

Business logic composed on top of the database layer. Each module owns one
concern of the gauntlet ladder:

- GauntletOperations: gauntlet and lineup records
- MatchOperations: match validation and persistence (the match recorder)
- RankingEngine: pure challenge-ladder rules, no database access
- LadderOperations: applies engine results to persisted positions
- LifecycleOperations: cascading deletes with ladder re-densing
"""
