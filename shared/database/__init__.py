"""
Database Connection and Utilities

Async SQLAlchemy engine and session factory for the relational store.
"""

from shared.database.postgres import Base, close_db, create_engine, create_session_factory, init_db

__all__ = [
    "Base",
    "create_engine",
    "create_session_factory",
    "init_db",
    "close_db",
]
