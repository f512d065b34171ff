"""
Gauntlet ladder ranking engine.

Challenge-ladder rankings for rowing crews: match recording, position swaps,
an append-only progression log and cascading lifecycle operations.
"""

__version__ = "0.1.0"
