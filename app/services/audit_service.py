"""
Audit Service - persistent trail of sensitive actions.

Every call writes one audit_logs row in the caller's session (so the entry
commits or rolls back together with the action it describes) and mirrors it
to the application log.
"""
from typing import Optional, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
import logging

from app.db.models import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """Write and read audit_logs"""

    @staticmethod
    async def log(
        db: AsyncSession,
        action: str,
        user_id: Optional[int] = None,
        details: Optional[dict] = None
    ) -> AuditLog:
        """
        Record an audited action.

        Args:
            db: Database session
            action: Short snake_case action name (e.g. "payment_validated")
            user_id: Acting user, None for system/webhook actions
            details: JSON-serializable context
        """
        entry = AuditLog(action=action, user_id=user_id, details=details or {})
        db.add(entry)
        await db.flush()

        logger.info(f"AUDIT {action} user={user_id} details={details or {}}")
        return entry

    @staticmethod
    async def list_recent(
        db: AsyncSession,
        limit: int = 100,
        action: Optional[str] = None
    ) -> List[AuditLog]:
        """Most recent entries first, optionally filtered by action."""
        query = select(AuditLog)
        if action:
            query = query.where(AuditLog.action == action)
        query = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)

        result = await db.execute(query)
        return list(result.scalars().all())
