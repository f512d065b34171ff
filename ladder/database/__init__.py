"""
Persistence layer: ORM models and the async Database wrapper.
"""
