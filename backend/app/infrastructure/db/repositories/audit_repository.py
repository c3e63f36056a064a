"""
Audit Repository

Append-only access to the subscription audit log.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from app.domain.subscription import AuditAction, AuditSource
from app.infrastructure.db.models.audit import SubscriptionAuditEntry
from app.infrastructure.db.repositories.base_repository import BaseRepository


class AuditRepository(BaseRepository[SubscriptionAuditEntry]):
    """Writes and prunes audit entries. Entries are never updated."""

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionAuditEntry, session)

    async def append(
        self,
        action: AuditAction,
        source: AuditSource,
        *,
        stripe_subscription_id: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        user_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        status_stripe: Optional[str] = None,
        status_db: Optional[str] = None,
        period_end_stripe: Optional[datetime] = None,
        period_end_db: Optional[datetime] = None,
        event_id: Optional[str] = None,
        reason: Optional[str] = None,
        error: Optional[str] = None,
    ) -> SubscriptionAuditEntry:
        entry = SubscriptionAuditEntry(
            action=action.value,
            source=source.value,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            user_id=user_id,
            plan_id=plan_id,
            status_stripe=status_stripe,
            status_db=status_db,
            period_end_stripe=period_end_stripe,
            period_end_db=period_end_db,
            event_id=event_id,
            reason=reason,
            error=error,
        )
        return await self.add(entry)

    async def list_for_subscription(self, stripe_subscription_id: str) -> list[SubscriptionAuditEntry]:
        """Entries for one Stripe subscription, oldest first."""
        statement = (
            select(SubscriptionAuditEntry)
            .where(SubscriptionAuditEntry.stripe_subscription_id == stripe_subscription_id)
            .order_by(col(SubscriptionAuditEntry.created_at))
        )
        result = await self._session.execute(statement)
        return list(result.scalars().all())

    async def delete_older_than(self, cutoff: datetime) -> int:
        result = await self._session.execute(
            delete(SubscriptionAuditEntry)
            .where(col(SubscriptionAuditEntry.created_at) < cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
