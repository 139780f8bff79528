"""Database package - all database-related code."""
from app.db.connection import init_db, get_db_session, session_scope, close_db
from app.db.models import Base, User, Sol, Participation, Payment, Transfer, AuditLog

__all__ = [
    "init_db",
    "get_db_session",
    "session_scope",
    "close_db",
    "Base",
    "User",
    "Sol",
    "Participation",
    "Payment",
    "Transfer",
    "AuditLog",
]
