"""Database module for SQLite persistence.

Provides:
- Database connection management
- Schema initialization
- Repository functions for grading caches, test results and skill scores
"""

from grading.db.database import get_db, init_db

__all__ = ["get_db", "init_db"]
