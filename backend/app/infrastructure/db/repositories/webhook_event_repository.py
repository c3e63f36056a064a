"""
Webhook Event Repository

Idempotency ledger for Stripe events.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

from app.infrastructure.db.models.base import utc_now
from app.infrastructure.db.models.webhook_event import StripeWebhookEvent
from app.infrastructure.db.repositories.base_repository import BaseRepository, dialect_insert


class WebhookEventRepository(BaseRepository[StripeWebhookEvent]):
    """Records processed Stripe event ids."""

    def __init__(self, session: AsyncSession):
        super().__init__(StripeWebhookEvent, session)

    async def claim(
        self,
        event_id: str,
        event_type: str,
        provider_created_at: Optional[datetime] = None,
        outcome: str = "applied",
    ) -> bool:
        """
        Insert the event id unless it is already recorded.

        Returns:
            True if this call recorded the event, False if it was a
            duplicate delivery. Callers must apply the event's effect in the
            same transaction, so a rollback releases the claim.
        """
        stmt = (
            dialect_insert(self._session, StripeWebhookEvent)
            .values(
                event_id=event_id,
                event_type=event_type,
                provider_created_at=provider_created_at,
                outcome=outcome,
                processed_at=utc_now(),
            )
            .on_conflict_do_nothing(index_elements=["event_id"])
            .returning(col(StripeWebhookEvent.event_id))
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def delete_older_than(self, cutoff: datetime) -> int:
        result = await self._session.execute(
            delete(StripeWebhookEvent)
            .where(col(StripeWebhookEvent.processed_at) < cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
