"""
Repository pattern implementations for Snowflake.

Repositories translate between domain models and database representations.
"""

from .chunks import ChunkRepository
from .sessions import SessionRepository

__all__ = ["ChunkRepository", "SessionRepository"]
