"""
Status and Result Models

What the orchestrator reports back to its callers. Failures during save,
load and polling are never raised out of the orchestrator; they arrive
here as a typed outcome plus a SyncErrorInfo on the orchestrator state.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SyncStatus(str, Enum):
    """
    User-visible sync status.

    not-configured -> connecting -> ready <-> syncing <-> needs-permission,
    plus error for failures that need user intervention.
    """
    NOT_CONFIGURED = "not-configured"
    CONNECTING = "connecting"
    READY = "ready"
    SYNCING = "syncing"
    NEEDS_PERMISSION = "needs-permission"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Error taxonomy surfaced to the UI."""
    TRANSIENT = "transient"          # provider unreachable; retried on next tick
    PERMISSION = "permission"        # access not granted yet
    FORMAT = "format"                # unparsable / invalid sync file
    CREDENTIAL = "credential"        # wrong password or key
    FAMILY_MISMATCH = "family_mismatch"
    CONFIGURATION = "configuration"  # no provider, or encryption required without a secret
    UNEXPECTED = "unexpected"


class SyncErrorInfo(BaseModel):
    """Last error recorded by the orchestrator."""

    kind: ErrorKind
    message: str
    recoverable: bool = Field(
        ...,
        description="True if the next user action or poll tick may succeed"
    )
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class SaveOutcome(str, Enum):
    SAVED = "saved"
    CONFLICT = "conflict"    # remote is newer than our watermark; not written
    SKIPPED = "skipped"      # nothing to do (no provider, encryption without secret)
    FAILED = "failed"


class SaveResult(BaseModel):
    """Result of one save attempt."""

    outcome: SaveOutcome
    exported_at: Optional[str] = None
    remote_timestamp: Optional[str] = None
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome == SaveOutcome.SAVED

    @property
    def is_conflict(self) -> bool:
        return self.outcome == SaveOutcome.CONFLICT


class LoadOutcome(str, Enum):
    IMPORTED = "imported"
    EMPTY = "empty"                      # placeholder file; local kept as-is
    NEEDS_PASSWORD = "needs_password"
    CREDENTIAL_ERROR = "credential_error"
    FORMAT_ERROR = "format_error"
    FAMILY_MISMATCH = "family_mismatch"
    FAILED = "failed"                    # I/O failure
    NOT_CONFIGURED = "not_configured"


class LoadResult(BaseModel):
    """Result of one load-and-merge attempt."""

    outcome: LoadOutcome
    exported_at: Optional[str] = None
    has_local_changes: bool = Field(
        default=False,
        description="The merge produced data the file didn't have (triggers a save-back)"
    )
    wal_recovered: bool = False
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome in (LoadOutcome.IMPORTED, LoadOutcome.EMPTY)

    @property
    def needs_password(self) -> bool:
        return self.outcome == LoadOutcome.NEEDS_PASSWORD


class ConflictCheck(BaseModel):
    """Comparison of the remote file's timestamp with our watermark."""

    has_conflict: bool
    remote_timestamp: Optional[str] = None
    watermark: Optional[str] = None
