"""Logging, exceptions and Redis helpers shared across the ladder package."""
