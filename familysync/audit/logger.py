"""
Audit Logger

DESIGN DECISION: Every significant sync step is logged.
This provides:
1. A trace of what each device wrote and merged
2. Debugging capability when two devices disagree
3. A sync history the user can inspect

The audit logger:
- Is async to not block the sync flow
- Gracefully handles failures (a failing audit store never breaks a save)
- Supports correlation IDs to trace the events of one poll tick or load
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from familysync.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from familysync.services.storage.interface import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An audit store (for persistence and user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("familysync.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity == AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_save_completed(
        self,
        provider: str,
        exported_at: str,
        encrypted: bool,
        forced: bool = False,
    ) -> None:
        """Log a successful sync file write."""
        await self.log(AuditEventBuilder.save_completed(
            provider=provider,
            exported_at=exported_at,
            encrypted=encrypted,
            forced=forced,
        ))

    async def log_save_conflict(
        self,
        provider: str,
        remote_timestamp: Optional[str],
        watermark: Optional[str],
    ) -> None:
        """Log a save refused because the remote file is newer."""
        await self.log(AuditEventBuilder.save_conflict(
            provider=provider,
            remote_timestamp=remote_timestamp,
            watermark=watermark,
        ))

    async def log_save_skipped(self, provider: Optional[str], reason: str) -> None:
        await self.log(AuditEventBuilder.save_skipped(provider, reason))

    async def log_save_failed(self, provider: str, error_message: str) -> None:
        await self.log(AuditEventBuilder.save_failed(provider, error_message))

    async def log_load_completed(
        self,
        provider: str,
        exported_at: str,
        has_local_changes: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a successful load-and-merge."""
        await self.log(AuditEventBuilder.load_completed(
            provider=provider,
            exported_at=exported_at,
            has_local_changes=has_local_changes,
            correlation_id=correlation_id,
        ))

    async def log_merge_applied(
        self,
        provider: str,
        counts: dict[str, int],
        tombstones: int,
        resurrected: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log the result of merging the sync file into local stores."""
        await self.log(AuditEventBuilder.merge_applied(
            provider=provider,
            counts=counts,
            tombstones=tombstones,
            resurrected=resurrected,
            correlation_id=correlation_id,
        ))

    async def log_remote_change(
        self,
        provider: str,
        remote_timestamp: str,
        watermark: Optional[str],
        correlation_id: UUID,
    ) -> None:
        """Log that polling found a newer sync file."""
        await self.log(AuditEventBuilder.remote_change_detected(
            provider=provider,
            remote_timestamp=remote_timestamp,
            watermark=watermark,
            correlation_id=correlation_id,
        ))

    async def log_provider_error(
        self,
        provider: str,
        error_message: str,
        recoverable: bool,
    ) -> None:
        """Log a storage provider failure."""
        await self.log(AuditEventBuilder.provider_error(
            provider=provider,
            error_message=error_message,
            recoverable=recoverable,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
    ) -> None:
        """Log an unexpected error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a poll tick or a load.
    Pass it through all subsequent operations.
    """
    return uuid4()
