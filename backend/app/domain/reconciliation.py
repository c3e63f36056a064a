"""
Reconciliation Domain Models

Per-record outcomes of a sweep and the summary returned by the cron endpoint.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


MAX_REPAIRED_LISTED = 50
MAX_DIVERGENCES_LISTED = 50
MAX_SKIPPED_LISTED = 30
MAX_ERRORS_LISTED = 30

DivergenceKind = Literal["missing", "mismatch"]


class Divergence(BaseModel):
    """Difference found between Stripe and the local ledger."""
    stripe_subscription_id: str
    kind: DivergenceKind
    status_stripe: Optional[str] = None
    status_db: Optional[str] = None
    period_end_stripe: Optional[datetime] = None
    period_end_db: Optional[datetime] = None


class RepairedRecord(BaseModel):
    stripe_subscription_id: str
    action: Literal["created", "updated"]
    user_id: str


class SkippedRecord(BaseModel):
    stripe_subscription_id: str
    reason: str


class RecordError(BaseModel):
    stripe_subscription_id: Optional[str] = None
    error: str


class SweepSummary(BaseModel):
    """Result of one reconciliation sweep."""
    ok: bool = True
    duration_ms: int = 0
    repaired_count: int = 0
    divergences_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    repaired: list[RepairedRecord] = Field(default_factory=list)
    divergences: list[Divergence] = Field(default_factory=list)
    skipped: list[SkippedRecord] = Field(default_factory=list)
    errors: list[RecordError] = Field(default_factory=list)

    def add_repaired(self, record: RepairedRecord) -> None:
        self.repaired_count += 1
        if len(self.repaired) < MAX_REPAIRED_LISTED:
            self.repaired.append(record)

    def add_divergence(self, divergence: Divergence) -> None:
        self.divergences_count += 1
        if len(self.divergences) < MAX_DIVERGENCES_LISTED:
            self.divergences.append(divergence)

    def add_skipped(self, record: SkippedRecord) -> None:
        self.skipped_count += 1
        if len(self.skipped) < MAX_SKIPPED_LISTED:
            self.skipped.append(record)

    def add_error(self, record: RecordError) -> None:
        self.error_count += 1
        if len(self.errors) < MAX_ERRORS_LISTED:
            self.errors.append(record)


class CleanupSummary(BaseModel):
    """Result of the retention cleanup job."""
    ok: bool = True
    cutoff: datetime
    webhook_events_deleted: int = 0
    audit_entries_deleted: int = 0
