"""
Audit Models for familysync

Every significant sync step is logged for audit purposes.
This provides:
1. A trace of which device wrote or merged what, and when
2. Debugging information when a merge surprises someone
3. The raw material for a "sync history" view

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every step of the sync lifecycle has its own event type.
    """
    # Lifecycle
    SYNC_CONFIGURED = "sync_configured"
    SYNC_DISCONNECTED = "sync_disconnected"
    SIGNED_OUT = "signed_out"
    PERMISSION_REQUIRED = "permission_required"
    PERMISSION_GRANTED = "permission_granted"

    # Saving
    SAVE_COMPLETED = "save_completed"
    SAVE_CONFLICT = "save_conflict"
    SAVE_SKIPPED = "save_skipped"
    SAVE_FAILED = "save_failed"
    OFFLINE_SAVE_QUEUED = "offline_save_queued"
    OFFLINE_SAVE_FLUSHED = "offline_save_flushed"

    # Loading and merging
    REMOTE_CHANGE_DETECTED = "remote_change_detected"
    LOAD_COMPLETED = "load_completed"
    LOAD_EMPTY = "load_empty"
    PASSWORD_REQUIRED = "password_required"
    CREDENTIAL_REJECTED = "credential_rejected"
    FORMAT_REJECTED = "format_rejected"
    FAMILY_MISMATCH = "family_mismatch"
    MERGE_APPLIED = "merge_applied"

    # Settings WAL
    WAL_RECOVERED = "wal_recovered"
    WAL_DISCARDED = "wal_discarded"

    # Encryption
    ENCRYPTION_ENABLED = "encryption_enabled"
    ENCRYPTION_DISABLED = "encryption_disabled"

    # System events
    PROVIDER_ERROR = "provider_error"
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant sync step creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - which provider / family is this about?
    provider: Optional[str] = Field(
        default=None,
        description="Display name of the storage provider involved"
    )
    family_id: Optional[str] = Field(
        default=None,
        description="Family the sync file belongs to"
    )

    # Correlation - for tracking related events (one poll tick, one load)
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "provider": self.provider,
            "family_id": self.family_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_json_line(self) -> str:
        """One-line JSON form, for append-only audit files."""
        return json.dumps(self.to_log_dict(), sort_keys=True)


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.save_completed(provider, exported_at)
        event = AuditEventBuilder.merge_applied(provider, counts, correlation_id)
    """

    @staticmethod
    def sync_configured(provider: str, family_id: Optional[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_CONFIGURED,
            provider=provider,
            family_id=family_id,
            description=f"Sync file configured: {provider}",
            is_user_action=True,
        )

    @staticmethod
    def sync_disconnected(provider: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_DISCONNECTED,
            provider=provider,
            description=f"Sync file disconnected: {provider}",
            is_user_action=True,
        )

    @staticmethod
    def signed_out(family_id: Optional[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SIGNED_OUT,
            family_id=family_id,
            description="Session signed out",
            is_user_action=True,
        )

    @staticmethod
    def permission_required(provider: str, reason: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PERMISSION_REQUIRED,
            severity=AuditSeverity.WARNING,
            provider=provider,
            description=f"Permission required for {provider}",
            error_message=reason,
        )

    @staticmethod
    def permission_granted(provider: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PERMISSION_GRANTED,
            provider=provider,
            description=f"Permission granted for {provider}",
            is_user_action=True,
        )

    @staticmethod
    def save_completed(
        provider: str,
        exported_at: str,
        encrypted: bool,
        forced: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SAVE_COMPLETED,
            provider=provider,
            description=f"Sync file saved ({'encrypted' if encrypted else 'plaintext'})",
            details={
                "exported_at": exported_at,
                "encrypted": encrypted,
                "forced": forced,
            },
        )

    @staticmethod
    def save_conflict(
        provider: str,
        remote_timestamp: Optional[str],
        watermark: Optional[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SAVE_CONFLICT,
            severity=AuditSeverity.WARNING,
            provider=provider,
            description="Save refused: sync file has newer data",
            details={
                "remote_timestamp": remote_timestamp,
                "watermark": watermark,
            },
        )

    @staticmethod
    def save_skipped(provider: Optional[str], reason: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SAVE_SKIPPED,
            severity=AuditSeverity.WARNING,
            provider=provider,
            description=f"Save skipped: {reason}",
        )

    @staticmethod
    def save_failed(provider: str, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SAVE_FAILED,
            severity=AuditSeverity.ERROR,
            provider=provider,
            description="Sync file save failed",
            error_message=error_message,
        )

    @staticmethod
    def offline_save_queued(provider: str, size_bytes: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OFFLINE_SAVE_QUEUED,
            severity=AuditSeverity.WARNING,
            provider=provider,
            description="Save queued until the connection resumes",
            details={"size_bytes": size_bytes},
        )

    @staticmethod
    def offline_save_flushed(provider: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OFFLINE_SAVE_FLUSHED,
            provider=provider,
            description="Queued offline save written",
        )

    @staticmethod
    def remote_change_detected(
        provider: str,
        remote_timestamp: str,
        watermark: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REMOTE_CHANGE_DETECTED,
            provider=provider,
            correlation_id=correlation_id,
            description="Sync file changed on another device",
            details={
                "remote_timestamp": remote_timestamp,
                "watermark": watermark,
            },
        )

    @staticmethod
    def load_completed(
        provider: str,
        exported_at: str,
        has_local_changes: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOAD_COMPLETED,
            provider=provider,
            correlation_id=correlation_id,
            description=f"Sync file loaded (exported {exported_at})",
            details={
                "exported_at": exported_at,
                "has_local_changes": has_local_changes,
            },
        )

    @staticmethod
    def load_empty(provider: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOAD_EMPTY,
            provider=provider,
            description="Sync file is empty; keeping local data",
        )

    @staticmethod
    def password_required(provider: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PASSWORD_REQUIRED,
            provider=provider,
            description="Sync file is encrypted; waiting for a password",
        )

    @staticmethod
    def credential_rejected(provider: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CREDENTIAL_REJECTED,
            severity=AuditSeverity.WARNING,
            provider=provider,
            description="Could not decrypt sync file with the supplied credential",
        )

    @staticmethod
    def format_rejected(provider: str, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FORMAT_REJECTED,
            severity=AuditSeverity.ERROR,
            provider=provider,
            description="Sync file rejected: invalid format",
            error_message=error_message,
        )

    @staticmethod
    def family_mismatch(
        provider: str,
        file_family_id: str,
        active_family_id: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FAMILY_MISMATCH,
            severity=AuditSeverity.ERROR,
            provider=provider,
            family_id=active_family_id,
            description="Sync file belongs to a different family",
            details={"file_family_id": file_family_id},
        )

    @staticmethod
    def merge_applied(
        provider: str,
        counts: dict[str, int],
        tombstones: int,
        resurrected: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MERGE_APPLIED,
            provider=provider,
            correlation_id=correlation_id,
            description=f"Merged {sum(counts.values())} records from sync file",
            details={
                "counts": counts,
                "tombstones": tombstones,
                "resurrected": resurrected,
            },
        )

    @staticmethod
    def wal_recovered(family_id: str, fields: list[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.WAL_RECOVERED,
            family_id=family_id,
            description="Recovered unsaved settings from the write-ahead log",
            details={"fields": fields},
        )

    @staticmethod
    def wal_discarded(family_id: str, reason: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.WAL_DISCARDED,
            family_id=family_id,
            description=f"Settings write-ahead log discarded: {reason}",
        )

    @staticmethod
    def encryption_changed(provider: str, enabled: bool) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.ENCRYPTION_ENABLED
                if enabled
                else AuditEventType.ENCRYPTION_DISABLED
            ),
            provider=provider,
            description=f"Sync file encryption {'enabled' if enabled else 'disabled'}",
            is_user_action=True,
        )

    @staticmethod
    def provider_error(
        provider: str,
        error_message: str,
        recoverable: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PROVIDER_ERROR,
            severity=AuditSeverity.WARNING if recoverable else AuditSeverity.ERROR,
            provider=provider,
            description=f"Storage provider error: {provider}",
            error_message=error_message,
            details={"recoverable": recoverable},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
        )
