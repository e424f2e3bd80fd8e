"""SyncJob model - one order-collection run for a store and time range."""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)

from domain.state_machine import coerce_status
from sync.status import ACTIVE_STATUSES, SyncJobStatus, SyncTriggerType, validate_transition

from .base import Base, TenantRecord

# Value of active_lock while the job holds the per-store lock
ACTIVE_LOCK = "ACTIVE"


class SyncJob(TenantRecord, Base):
    """Order sync job.

    The time range is half-open: [sync_start_time, sync_end_time).

    active_lock is non-null only while the job is PENDING or RUNNING; the
    unique constraint on (tenant_id, store_id, active_lock) lets at most one
    such job exist per store. NULLs never collide, so finished jobs do not
    hold the lock.

    Attributes:
        store_id: Store being synced
        trigger_type: SyncTriggerType value
        status: SyncJobStatus value
        total_fetched / created_count / updated_count / failed_count: Counters
        attempt_count: Number of runs started (first run included)
        next_retry_at: When the RetryScheduler may re-dispatch the job
        is_active: False once cancelled; inactive jobs are never re-dispatched
        last_error_code / last_error_message / last_error_kind: Last failure
    """

    __tablename__ = "sync_job"

    store_id = Column(Uuid, ForeignKey("store.id", ondelete="CASCADE"), nullable=False)
    trigger_type = Column(String(20), nullable=False, default=SyncTriggerType.SCHEDULED.value)
    status = Column(String(20), nullable=False, default=SyncJobStatus.PENDING.value)
    sync_start_time = Column(DateTime(timezone=True), nullable=False)
    sync_end_time = Column(DateTime(timezone=True), nullable=False)

    total_fetched = Column(Integer, nullable=False, default=0)
    created_count = Column(Integer, nullable=False, default=0)
    updated_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)

    attempt_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    active_lock = Column(String(10), nullable=True)

    last_error_code = Column(String(60), nullable=True)
    last_error_message = Column(Text, nullable=True)
    last_error_kind = Column(String(20), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "store_id", "active_lock", name="uq_sync_job_store_active"),
        Index("idx_sync_job_retry", "status", "is_active", "next_retry_at"),
    )

    @classmethod
    def create(
        cls,
        tenant_id: uuid.UUID,
        store_id: uuid.UUID,
        sync_start_time: datetime,
        sync_end_time: datetime,
        trigger_type: SyncTriggerType = SyncTriggerType.SCHEDULED,
        now: Optional[datetime] = None,
    ) -> "SyncJob":
        job = cls(
            tenant_id=tenant_id,
            store_id=store_id,
            trigger_type=SyncTriggerType(trigger_type).value,
            status=SyncJobStatus.PENDING.value,
            sync_start_time=sync_start_time,
            sync_end_time=sync_end_time,
            total_fetched=0,
            created_count=0,
            updated_count=0,
            failed_count=0,
            attempt_count=0,
            is_active=True,
            active_lock=ACTIVE_LOCK,
        )
        job._stamp(now)
        return job

    @property
    def status_enum(self) -> SyncJobStatus:
        return coerce_status(SyncJobStatus, self.status)

    def transition_to(self, new_status: SyncJobStatus, now: Optional[datetime] = None) -> None:
        """Move to new_status, keeping active_lock in step with the status.

        Raises:
            StateTransitionError: If transition is not allowed
        """
        validate_transition(self.status_enum, new_status)
        self.status = new_status.value
        self.active_lock = ACTIVE_LOCK if new_status in ACTIVE_STATUSES else None
        self.touch(now)

    def reset_counters(self) -> None:
        self.total_fetched = 0
        self.created_count = 0
        self.updated_count = 0
        self.failed_count = 0

    def record_error(self, code: str, message: str, kind: str) -> None:
        self.last_error_code = code
        self.last_error_message = message
        self.last_error_kind = kind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "store_id": str(self.store_id),
            "status": self.status,
            "trigger_type": self.trigger_type,
            "total_fetched": self.total_fetched,
            "created_count": self.created_count,
            "updated_count": self.updated_count,
            "failed_count": self.failed_count,
            "attempt_count": self.attempt_count,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "last_error_code": self.last_error_code,
        }

    def __repr__(self):
        return f"<SyncJob(id={self.id}, store_id={self.store_id}, status={self.status})>"
