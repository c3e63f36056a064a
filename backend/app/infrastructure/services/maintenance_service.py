"""
Maintenance Service

Retention cleanup for the webhook idempotency ledger and the audit log.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import Settings, get_settings
from app.domain.reconciliation import CleanupSummary
from app.domain.subscription import utcnow
from app.infrastructure.db.database import unit_of_work
from app.infrastructure.db.repositories.audit_repository import AuditRepository
from app.infrastructure.db.repositories.webhook_event_repository import WebhookEventRepository


logger = logging.getLogger(__name__)


class MaintenanceService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self._session_factory = session_factory
        self._retention = timedelta(days=settings.audit_retention_days)

    async def cleanup(self, now: Optional[datetime] = None) -> CleanupSummary:
        """
        Delete webhook event records and audit entries past retention.
        """
        cutoff = (now or utcnow()) - self._retention
        async with unit_of_work(self._session_factory, "retention_cleanup") as session:
            events = await WebhookEventRepository(session).delete_older_than(cutoff)
            audits = await AuditRepository(session).delete_older_than(cutoff)

        logger.info(f"[CLEANUP] Removed {events} webhook events and {audits} audit entries before {cutoff}")
        return CleanupSummary(cutoff=cutoff, webhook_events_deleted=events, audit_entries_deleted=audits)
