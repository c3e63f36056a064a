"""
Usage Repository

Daily interaction counters. The increment is a single conditional UPDATE
so concurrent requests can never push a counter past its limit.
"""

from datetime import date
from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from app.infrastructure.db.models.base import new_id, utc_now
from app.infrastructure.db.models.usage import DailyInteractionUsage
from app.infrastructure.db.repositories.base_repository import BaseRepository, dialect_insert


class UsageRepository(BaseRepository[DailyInteractionUsage]):
    """Daily usage counter access."""

    def __init__(self, session: AsyncSession):
        super().__init__(DailyInteractionUsage, session)

    async def get_for_day(self, user_id: str, usage_date: date) -> Optional[DailyInteractionUsage]:
        statement = select(DailyInteractionUsage).where(
            DailyInteractionUsage.user_id == user_id,
            DailyInteractionUsage.usage_date == usage_date,
        )
        result = await self._session.execute(statement)
        return result.scalar_one_or_none()

    async def used_on(self, user_id: str, usage_date: date) -> int:
        """Interactions already consumed on `usage_date` (0 if no row yet)."""
        row = await self.get_for_day(user_id, usage_date)
        return row.interactions_used if row else 0

    async def ensure_row(
        self,
        user_id: str,
        usage_date: date,
        daily_limit: Optional[int],
        subscription_id: Optional[str],
    ) -> None:
        """
        Create today's row lazily, or refresh its limit snapshot.

        A lowered limit is never stored below the count already used, which
        keeps the within-limit check constraint satisfied and simply stops
        further increments for the day.
        """
        now = utc_now()
        stmt = dialect_insert(self._session, DailyInteractionUsage).values(
            id=new_id(),
            user_id=user_id,
            usage_date=usage_date,
            interactions_used=0,
            daily_limit=daily_limit,
            subscription_id=subscription_id,
            created_at=now,
            updated_at=now,
        )
        used = col(DailyInteractionUsage.interactions_used)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "usage_date"],
            set_={
                "daily_limit": case(
                    (stmt.excluded.daily_limit.is_(None), None),
                    (stmt.excluded.daily_limit >= used, stmt.excluded.daily_limit),
                    else_=used,
                ),
                "subscription_id": stmt.excluded.subscription_id,
                "updated_at": now,
            },
        )
        await self._session.execute(stmt)

    async def try_increment(self, user_id: str, usage_date: date) -> Optional[int]:
        """
        Consume one interaction if the snapshot limit allows it.

        Returns:
            The new counter value, or None if the limit was already reached
            (or no row exists for the day).
        """
        used = col(DailyInteractionUsage.interactions_used)
        limit = col(DailyInteractionUsage.daily_limit)
        stmt = (
            update(DailyInteractionUsage)
            .where(
                col(DailyInteractionUsage.user_id) == user_id,
                col(DailyInteractionUsage.usage_date) == usage_date,
                limit.is_(None) | (used < limit),
            )
            .values(interactions_used=used + 1, updated_at=utc_now())
            .returning(used)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def release(self, user_id: str, usage_date: date) -> bool:
        """Give back one interaction; never takes a counter below zero."""
        used = col(DailyInteractionUsage.interactions_used)
        stmt = (
            update(DailyInteractionUsage)
            .where(
                col(DailyInteractionUsage.user_id) == user_id,
                col(DailyInteractionUsage.usage_date) == usage_date,
                used > 0,
            )
            .values(interactions_used=used - 1, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0
