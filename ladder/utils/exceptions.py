"""
Exceptions raised by the ladder engine, each carrying a caller-facing message.
"""

class LadderError(Exception):
    """Base exception for ladder-related errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

class ValidationError(LadderError):
    """Raised when match or adjustment input is malformed or inconsistent."""
    def __init__(self, reason: str):
        super().__init__(
            f"Validation failed: {reason}",
            f"❌ {reason}"
        )
        self.reason = reason

class DuplicateMatchError(LadderError):
    """Raised when an identical match was already recorded."""
    def __init__(self, gauntlet_id: int, dedupe_key: str, existing_match_id: int = None):
        super().__init__(
            f"Match '{dedupe_key}' already recorded in gauntlet {gauntlet_id}",
            "❌ This match has already been recorded."
        )
        self.gauntlet_id = gauntlet_id
        self.dedupe_key = dedupe_key
        self.existing_match_id = existing_match_id

class NotFoundError(LadderError):
    """Raised when a referenced gauntlet, lineup or match does not exist."""
    def __init__(self, entity: str, entity_id):
        super().__init__(
            f"{entity} {entity_id} not found",
            f"❌ {entity} not found!"
        )
        self.entity = entity
        self.entity_id = entity_id

class ConcurrencyConflictError(LadderError):
    """Raised when a concurrent update won the race for the same ladder."""
    def __init__(self, gauntlet_id: int, details: str = None):
        super().__init__(
            f"Concurrent update conflict on gauntlet {gauntlet_id}: {details}",
            "❌ The ladder changed while saving. Please try again."
        )
        self.gauntlet_id = gauntlet_id

class InvariantViolationError(LadderError):
    """Raised when the ladder would be left in an inconsistent state."""
    def __init__(self, gauntlet_id: int, violations: list):
        super().__init__(
            f"Ladder invariants violated for gauntlet {gauntlet_id}: {'; '.join(violations)}",
            "❌ Internal ranking error. The update was not saved."
        )
        self.gauntlet_id = gauntlet_id
        self.violations = violations
