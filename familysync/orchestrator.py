"""
Sync Orchestrator for familysync

This module ties the stores, the codec, the merge engine and a storage
provider together and defines the sync flows:
1. Save (local change -> debounce -> conflict check -> serialise -> write)
2. Load (read -> decode -> merge -> repopulate stores -> replay settings WAL)
3. Poll (cheap last-modified check -> load only when the file changed)

DESIGN DECISION: The orchestrator is the error boundary.
- Nothing raised by a provider, the codec or a store escapes save/load/poll
- Every failure becomes a typed outcome plus ``last_error`` and a status
- Every step is audited

Save and load never overlap: both run under one asyncio.Lock, and a
pending debounced save is cancelled before a load starts. While a load
repopulates the stores, their change notifications don't schedule saves.
"""

import asyncio
from typing import Any, Callable, Optional, Union
from uuid import UUID

import structlog

from familysync.audit import AuditLogger, create_correlation_id
from familysync.config import get_settings
from familysync.config.settings import SyncTimingSettings
from familysync.models.audit import AuditEvent, AuditEventBuilder
from familysync.models.status import (
    ConflictCheck,
    ErrorKind,
    LoadOutcome,
    LoadResult,
    SaveOutcome,
    SaveResult,
    SyncErrorInfo,
    SyncStatus,
)
from familysync.models.sync_file import EncryptedSyncFile, SyncFileData
from familysync.services.crypto import Secret
from familysync.services.storage import (
    ConnectionError,
    GoogleDriveProvider,
    InMemoryAuditStorage,
    LocalFileProvider,
    PermissionDeniedError,
    ProviderType,
    StorageError,
    StorageProvider,
)
from familysync.stores import StoreChange, StoreRegistry
from familysync.sync import codec
from familysync.sync.codec import CredentialError, SyncFormatError
from familysync.sync.debounce import Debouncer
from familysync.sync.events import EventHub
from familysync.sync.highlight import HighlightTracker
from familysync.sync.merge import merge_data
from familysync.sync.session import SessionState, SyncSession
from familysync.sync.wal import FileWALChannel, MemoryWALChannel, SettingsWAL, WALChannel
from familysync.utils.dates import now_iso, parse_iso, to_iso


logger = structlog.get_logger(__name__)


class FamilyMismatchError(Exception):
    """The sync file belongs to a different family than the active session."""
    pass


class SyncOrchestrator:
    """
    Drives synchronisation between the local stores and one sync file.

    Status flow:
        not-configured -> connecting -> ready <-> syncing <-> needs-permission
    with ``error`` for failures that need the user (bad file, wrong family).
    """

    def __init__(
        self,
        registry: StoreRegistry,
        session: Optional[SyncSession] = None,
        audit_logger: Optional[AuditLogger] = None,
        timing: Optional[SyncTimingSettings] = None,
        highlights: Optional[HighlightTracker] = None,
        iterations: Optional[int] = None,
    ):
        self._registry = registry
        self._session = session or SyncSession()
        self._audit_logger = audit_logger
        self._timing = timing or get_settings().timing
        self._highlights = highlights or HighlightTracker(
            registry.updated_at_map,
            self._timing.highlight_duration_seconds,
        )
        self._iterations = iterations

        self._provider: Optional[StorageProvider] = None
        self._status = SyncStatus.NOT_CONFIGURED
        self._last_error: Optional[SyncErrorInfo] = None

        # exportedAt of the last file we wrote or merged
        self._watermark: Optional[str] = None
        # Provider last-modified right after that write/merge (conflict check)
        self._remote_marker: Optional[str] = None
        # Last provider last-modified we acted on in any way (polling)
        self._last_seen_modified: Optional[str] = None
        self._queued_exported_at: Optional[str] = None
        self._pending: Optional[EncryptedSyncFile] = None

        self._lock = asyncio.Lock()
        self._reload_depth = 0
        self._checking = False
        self._debouncer = Debouncer(self._debounced_save, self._timing.debounce_seconds)
        self._polling = False
        self._poll_task: Optional[asyncio.Task] = None
        self._poll_tick: Optional[asyncio.Task] = None

        self._status_changed: EventHub[SyncStatus] = EventHub("status_changed")
        self._save_completed: EventHub[str] = EventHub("save_completed")
        self._unsubscribe_stores = registry.subscribe_all(self._on_store_change)

    # ----- state -----

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def last_error(self) -> Optional[SyncErrorInfo]:
        return self._last_error

    @property
    def provider(self) -> Optional[StorageProvider]:
        return self._provider

    @property
    def session(self) -> SyncSession:
        return self._session

    @property
    def highlights(self) -> HighlightTracker:
        return self._highlights

    @property
    def watermark(self) -> Optional[str]:
        return self._watermark

    @property
    def is_reloading(self) -> bool:
        return self._reload_depth > 0

    @property
    def has_pending_save(self) -> bool:
        return self._debouncer.pending

    @property
    def pending_encrypted_file(self) -> Optional[EncryptedSyncFile]:
        """An encrypted file waiting for ``decrypt_pending``."""
        return self._pending

    @property
    def is_polling(self) -> bool:
        return self._polling

    def on_status_change(self, listener: Callable[[SyncStatus], Any]) -> Callable[[], None]:
        return self._status_changed.subscribe(listener)

    def on_save_complete(self, listener: Callable[[str], Any]) -> Callable[[], None]:
        """``listener`` receives the exportedAt of each successful save."""
        return self._save_completed.subscribe(listener)

    # ----- lifecycle -----

    async def configure(self, provider: StorageProvider) -> bool:
        """
        Bind a sync target.

        An existing file is merged first; a missing or empty one is created
        from the current local state.

        Returns:
            True if the orchestrator is ready to sync
        """
        self._debouncer.cancel()
        self._provider = provider
        self._reset_sync_state()
        if self._session.state == SessionState.CREATED:
            self._session.activate()
        self._set_status(SyncStatus.CONNECTING)

        name = provider.get_display_name()
        try:
            if not await provider.is_ready():
                self._set_status(SyncStatus.NEEDS_PERMISSION)
                await self._audit(AuditEventBuilder.permission_required(
                    name, "Access to the sync file has not been granted"
                ))
                return False
            remote_modified = await provider.get_last_modified()
        except Exception as e:
            await self._handle_error(e)
            return False

        await self._audit(AuditEventBuilder.sync_configured(name, self._session.family_id))

        if remote_modified is not None:
            result = await self.load_and_import()
            return result.success or result.needs_password

        saved = await self.save(force=True)
        return saved.outcome in (SaveOutcome.SAVED, SaveOutcome.SKIPPED)

    async def request_permission(self) -> bool:
        """Ask the provider for access again and return to ``ready``."""
        if self._provider is None:
            return False

        try:
            granted = await self._provider.request_access()
        except Exception as e:
            await self._handle_error(e)
            return False

        if not granted:
            self._set_status(SyncStatus.NEEDS_PERMISSION)
            return False

        self._last_error = None
        self._set_status(SyncStatus.READY)
        await self._audit(AuditEventBuilder.permission_granted(self._provider.get_display_name()))
        return True

    async def disconnect(self) -> None:
        """Forget the sync target. Local data is kept."""
        self._debouncer.cancel()
        await self.stop_polling()

        provider = self._provider
        self._provider = None
        self._reset_sync_state()
        self._last_error = None
        if provider is not None:
            try:
                await provider.disconnect()
            except StorageError as e:
                logger.warning("provider_disconnect_failed", error=str(e))
            await self._audit(AuditEventBuilder.sync_disconnected(provider.get_display_name()))
        self._set_status(SyncStatus.NOT_CONFIGURED)

    async def sign_out(self) -> None:
        """
        End the session.

        A pending save is written first. Afterwards nothing from this
        session (secret, WAL, tombstones, highlights) is left behind.
        """
        family_id = self._session.family_id
        await self.flush_pending_save()
        await self.stop_polling()
        tick = self._poll_tick
        if tick is not None and not tick.done():
            await tick

        async with self._lock:
            self._registry.settings.wal.clear_all()
            self._registry.ledger.reset()
            self._highlights.clear()
            await self.disconnect()
        self._session.teardown()
        await self._audit(AuditEventBuilder.signed_out(family_id))

    def close(self) -> None:
        """Detach from the stores. The orchestrator can't be used afterwards."""
        self._debouncer.cancel()
        self._unsubscribe_stores()
        self._status_changed.clear()
        self._save_completed.clear()

    # ----- saving -----

    def trigger_debounced_save(self) -> None:
        """Schedule a save after the quiet period. Ignored while stores are reloading."""
        if self._provider is None or self.is_reloading:
            return
        self._debouncer.trigger()

    async def flush_pending_save(self) -> bool:
        """
        Run a scheduled debounced save now, and wait for one that is
        already running. Returns True if one was scheduled.
        """
        flushed = await self._debouncer.flush()
        await self._debouncer.wait()
        return flushed

    async def save_now(self) -> SaveResult:
        """Save immediately, replacing any scheduled save."""
        self._debouncer.cancel()
        return await self.save()

    async def save(self, secret: Optional[Secret] = None, force: bool = False) -> SaveResult:
        """
        Write the current local state to the sync file.

        Unless ``force`` is set, the save is refused with a CONFLICT outcome
        when the file changed since we last wrote or merged it.
        """
        if self._provider is None:
            return SaveResult(outcome=SaveOutcome.SKIPPED, message="No sync file configured")

        async with self._lock:
            if self._provider is None:
                return SaveResult(outcome=SaveOutcome.SKIPPED, message="No sync file configured")
            return await self._save_locked(secret, force)

    async def check_for_conflicts(self) -> ConflictCheck:
        """Compare the file's last-modified time with our last write/merge."""
        if self._provider is None:
            return ConflictCheck(has_conflict=False, watermark=self._watermark)
        remote_modified = await self._provider.get_last_modified()
        return ConflictCheck(
            has_conflict=_is_newer(remote_modified, self._remote_marker),
            remote_timestamp=remote_modified,
            watermark=self._watermark,
        )

    async def _debounced_save(self) -> None:
        result = await self.save()
        if result.is_conflict:
            # Another device saved in the meantime: merge its file, which
            # saves our changes back on top.
            await self.load_and_import()

    async def _save_locked(self, secret: Optional[Secret], force: bool) -> SaveResult:
        provider = self._provider
        name = provider.get_display_name()
        secret = secret or self._session.secret

        if self._session.encryption_required and secret is None:
            reason = "Encryption is enabled but no password or key is available"
            await self._audit(AuditEventBuilder.save_skipped(name, reason))
            return SaveResult(outcome=SaveOutcome.SKIPPED, message=reason)

        self._set_status(SyncStatus.SYNCING)
        try:
            if not force:
                check = await self.check_for_conflicts()
                if check.has_conflict:
                    if self._audit_logger:
                        await self._audit_logger.log_save_conflict(
                            provider=name,
                            remote_timestamp=check.remote_timestamp,
                            watermark=check.watermark,
                        )
                    self._set_status(SyncStatus.READY)
                    return SaveResult(
                        outcome=SaveOutcome.CONFLICT,
                        remote_timestamp=check.remote_timestamp,
                        message="The sync file has newer changes",
                    )

            exported_at = now_iso()
            content = await asyncio.to_thread(
                codec.serialize,
                self._registry.collections(),
                self._registry.ledger.get_all(),
                self._registry.settings.settings,
                secret,
                self._session.family_id,
                self._session.family_name,
                exported_at,
                self._iterations,
            )

            try:
                await provider.write(content)
            except ConnectionError:
                if provider.has_pending_writes:
                    self._queued_exported_at = exported_at
                    await self._audit(AuditEventBuilder.offline_save_queued(name, len(content)))
                raise

            self._watermark = exported_at
            self._remote_marker = await provider.get_last_modified()
            self._last_seen_modified = self._remote_marker
            self._queued_exported_at = None
        except Exception as e:
            await self._handle_error(e)
            return SaveResult(outcome=SaveOutcome.FAILED, message=str(e))

        self._registry.settings.wal.clear()
        self._last_error = None
        self._set_status(SyncStatus.READY)
        self._save_completed.emit(exported_at)
        if self._audit_logger:
            await self._audit_logger.log_save_completed(
                provider=name,
                exported_at=exported_at,
                encrypted=secret is not None,
                forced=force,
            )
        return SaveResult(
            outcome=SaveOutcome.SAVED,
            exported_at=exported_at,
            remote_timestamp=self._remote_marker,
        )

    # ----- loading -----

    async def load_and_import(
        self,
        secret: Optional[Secret] = None,
        correlation_id: Optional[UUID] = None,
    ) -> LoadResult:
        """
        Read the sync file and merge it into the local stores.

        An encrypted file with no usable secret is held for
        ``decrypt_pending`` and reported as NEEDS_PASSWORD.
        """
        if self._provider is None:
            return LoadResult(outcome=LoadOutcome.NOT_CONFIGURED)

        self._debouncer.cancel()
        async with self._lock:
            if self._provider is None:
                return LoadResult(outcome=LoadOutcome.NOT_CONFIGURED)
            return await self._load_locked(secret, correlation_id)

    async def decrypt_pending(self, secret: Secret) -> LoadResult:
        """Retry the held encrypted file with a secret, without reading it again."""
        if self._provider is None:
            return LoadResult(outcome=LoadOutcome.NOT_CONFIGURED)
        if self._pending is None:
            return LoadResult(outcome=LoadOutcome.FAILED, message="No encrypted file is waiting")

        async with self._lock:
            pending = self._pending
            if pending is None:
                return LoadResult(outcome=LoadOutcome.FAILED, message="No encrypted file is waiting")
            self._set_status(SyncStatus.SYNCING)
            return await self._decrypt_and_import(pending, secret, None)

    async def _load_locked(
        self,
        secret: Optional[Secret],
        correlation_id: Optional[UUID],
    ) -> LoadResult:
        provider = self._provider
        name = provider.get_display_name()
        self._set_status(SyncStatus.SYNCING)

        try:
            remote_modified = await provider.get_last_modified()
            content = await provider.read()
            self._last_seen_modified = remote_modified
            if content is None:
                return await self._import_missing_file(name)
            decoded = codec.deserialize(content)
        except Exception as e:
            return await self._load_failed(e)

        if decoded.needs_password:
            secret = secret or self._session.secret
            if secret is None:
                self._pending = decoded.pending
                self._set_status(SyncStatus.READY)
                await self._audit(AuditEventBuilder.password_required(name))
                return LoadResult(
                    outcome=LoadOutcome.NEEDS_PASSWORD,
                    exported_at=decoded.pending.exported_at,
                )
            return await self._decrypt_and_import(decoded.pending, secret, correlation_id)

        return await self._import_locked(decoded.parsed, secret, correlation_id)

    async def _decrypt_and_import(
        self,
        pending: EncryptedSyncFile,
        secret: Secret,
        correlation_id: Optional[UUID],
    ) -> LoadResult:
        try:
            parsed = await asyncio.to_thread(codec.decrypt, pending, secret, self._iterations)
        except Exception as e:
            self._pending = pending
            return await self._load_failed(e)

        self._session.set_secret(secret)
        self._session.encryption_required = True
        return await self._import_locked(parsed, secret, correlation_id)

    async def _import_missing_file(self, name: str) -> LoadResult:
        """Nothing to merge; establish the file from local state if we have any."""
        self._pending = None
        await self._audit(AuditEventBuilder.load_empty(name))
        registry = self._registry
        has_data = (
            any(registry.collections().values())
            or len(registry.ledger) > 0
            or registry.settings.settings is not None
        )
        if has_data:
            await self._save_locked(None, force=True)
        if self._status == SyncStatus.SYNCING:
            self._set_status(SyncStatus.READY)
        return LoadResult(outcome=LoadOutcome.EMPTY, has_local_changes=has_data)

    async def _import_locked(
        self,
        remote: SyncFileData,
        secret: Optional[Secret],
        correlation_id: Optional[UUID],
    ) -> LoadResult:
        name = self._provider.get_display_name()

        try:
            self._check_family(remote)
        except FamilyMismatchError as e:
            await self._audit(AuditEventBuilder.family_mismatch(
                name, remote.family_id, self._session.family_id
            ))
            self._fail(ErrorKind.FAMILY_MISMATCH, str(e), False, SyncStatus.ERROR)
            return LoadResult(outcome=LoadOutcome.FAMILY_MISMATCH, message=str(e))

        self._session.adopt_family(remote.family_id, remote.family_name)
        self._registry.settings.wal.rebind(self._session.family_id)
        self._pending = None

        registry = self._registry
        self._reload_depth += 1
        try:
            self._highlights.snapshot_before_reload()
            result = merge_data(
                registry.collections(),
                registry.ledger.get_all(),
                registry.settings.settings,
                remote,
                tombstone_retention_days=self._timing.tombstone_retention_days,
            )
            await registry.apply_merge(result)
            registry.ledger.replace_all(result.tombstones)
            wal_recovered = await self._replay_wal(remote)
            self._highlights.detect_changes()

            self._watermark = remote.exported_at
            # The last-modified seen just before the read, so a write that
            # landed after it still shows up as a conflict.
            self._remote_marker = self._last_seen_modified
        except Exception as e:
            return await self._load_failed(e)
        finally:
            self._reload_depth -= 1

        if self._audit_logger:
            await self._audit_logger.log_merge_applied(
                provider=name,
                counts=result.counts(),
                tombstones=len(result.tombstones),
                resurrected=len(result.resurrected),
                correlation_id=correlation_id,
            )
            await self._audit_logger.log_load_completed(
                provider=name,
                exported_at=remote.exported_at,
                has_local_changes=result.has_local_changes,
                correlation_id=correlation_id,
            )

        if result.has_local_changes or wal_recovered:
            await self._save_locked(secret, force=True)

        if self._status == SyncStatus.SYNCING:
            self._last_error = None
            self._set_status(SyncStatus.READY)

        return LoadResult(
            outcome=LoadOutcome.EMPTY if remote.is_empty else LoadOutcome.IMPORTED,
            exported_at=remote.exported_at,
            has_local_changes=result.has_local_changes,
            wal_recovered=wal_recovered,
        )

    def _check_family(self, remote: SyncFileData) -> None:
        active = self._session.family_id
        if active and remote.family_id and remote.family_id != active:
            raise FamilyMismatchError(
                f"Sync file belongs to family {remote.family_id!r}, not {active!r}"
            )

    async def _replay_wal(self, remote: SyncFileData) -> bool:
        """
        Reapply settings changes the file doesn't have yet.

        Only an entry newer than the file's exportedAt and within the
        staleness window is replayed; anything else is discarded.
        """
        wal = self._registry.settings.wal
        entry = wal.read()
        if entry is None:
            return False

        family_id = wal.family_id or ""
        if wal.is_stale(entry):
            wal.clear()
            await self._audit(AuditEventBuilder.wal_discarded(family_id, "entry is stale"))
            return False
        if entry.timestamp <= remote.exported_time:
            wal.clear()
            await self._audit(AuditEventBuilder.wal_discarded(
                family_id, "sync file is newer than the entry"
            ))
            return False

        await self._registry.settings.apply_recovered(entry.settings, to_iso(entry.timestamp))
        await self._audit(AuditEventBuilder.wal_recovered(family_id, sorted(entry.settings)))
        return True

    async def _load_failed(self, error: Exception) -> LoadResult:
        outcome = await self._handle_error(error)
        return LoadResult(outcome=outcome, message=str(error))

    # ----- polling -----

    async def poll_for_changes(self) -> bool:
        """
        One poll tick: a last-modified check, and a full load only if the
        file changed. A tick already in flight makes this a no-op.

        Returns:
            True if a load was triggered
        """
        if self._provider is None or self._checking:
            return False

        self._checking = True
        try:
            provider = self._provider
            try:
                remote_modified = await provider.get_last_modified()
            except Exception as e:
                await self._handle_error(e)
                return False

            if _is_newer(remote_modified, self._last_seen_modified):
                correlation_id = create_correlation_id()
                if self._audit_logger:
                    await self._audit_logger.log_remote_change(
                        provider=provider.get_display_name(),
                        remote_timestamp=remote_modified,
                        watermark=self._watermark,
                        correlation_id=correlation_id,
                    )
                await self.load_and_import(correlation_id=correlation_id)
                return True

            if provider.has_pending_writes:
                await self._flush_offline(provider)
            elif self._status == SyncStatus.NEEDS_PERMISSION or (
                self._last_error is not None and self._last_error.kind == ErrorKind.TRANSIENT
            ):
                # The provider answered, so the outage is over.
                self._last_error = None
                self._set_status(SyncStatus.READY)
            return False
        finally:
            self._checking = False

    async def _flush_offline(self, provider: StorageProvider) -> None:
        async with self._lock:
            try:
                flushed = await provider.flush_pending_writes()
                if not flushed:
                    return
                if self._queued_exported_at is not None:
                    self._watermark = self._queued_exported_at
                    self._queued_exported_at = None
                self._remote_marker = await provider.get_last_modified()
                self._last_seen_modified = self._remote_marker
            except Exception as e:
                await self._handle_error(e)
                return

        self._registry.settings.wal.clear()
        self._last_error = None
        self._set_status(SyncStatus.READY)
        await self._audit(AuditEventBuilder.offline_save_flushed(provider.get_display_name()))

    def start_polling(self) -> None:
        """Poll on the configured interval until ``stop_polling``."""
        if self._polling:
            return
        self._polling = True
        self._poll_task = asyncio.ensure_future(self._poll_loop())

    async def stop_polling(self) -> None:
        """Stop the poll loop. A tick that is already running is allowed to finish."""
        self._polling = False
        task = self._poll_task
        self._poll_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _poll_loop(self) -> None:
        while self._polling:
            await asyncio.sleep(self._timing.poll_interval_seconds)
            if not self._polling:
                break
            self._poll_tick = asyncio.ensure_future(self.poll_for_changes())
            await asyncio.shield(self._poll_tick)

    # ----- user-facing triggers -----

    async def sync_now(self) -> Union[SaveResult, LoadResult]:
        """
        Manual sync: merge the file if it changed, otherwise save.

        A pending debounced save is folded into this sync.
        """
        if self._provider is None:
            return SaveResult(outcome=SaveOutcome.SKIPPED, message="No sync file configured")

        self._debouncer.cancel()
        try:
            check = await self.check_for_conflicts()
        except Exception as e:
            await self._handle_error(e)
            return SaveResult(outcome=SaveOutcome.FAILED, message=str(e))

        if check.has_conflict:
            return await self.load_and_import()
        return await self.save()

    async def force_sync_now(self) -> SaveResult:
        """Overwrite the sync file with local state, skipping the conflict check."""
        self._debouncer.cancel()
        return await self.save(force=True)

    # ----- encryption -----

    async def enable_encryption(self, secret: Secret) -> SaveResult:
        """Encrypt the sync file from now on and rewrite it encrypted."""
        self._session.set_secret(secret)
        self._session.encryption_required = True
        await self._registry.settings.update({"encryptionEnabled": True})
        self._debouncer.cancel()
        result = await self.save(force=True)
        if self._provider is not None:
            await self._audit(AuditEventBuilder.encryption_changed(
                self._provider.get_display_name(), True
            ))
        return result

    async def disable_encryption(self) -> SaveResult:
        """Store the sync file as plaintext from now on and rewrite it."""
        self._session.set_secret(None)
        self._session.encryption_required = False
        await self._registry.settings.update({"encryptionEnabled": False})
        self._debouncer.cancel()
        result = await self.save(force=True)
        if self._provider is not None:
            await self._audit(AuditEventBuilder.encryption_changed(
                self._provider.get_display_name(), False
            ))
        return result

    # ----- internals -----

    def _on_store_change(self, change: StoreChange) -> None:
        self.trigger_debounced_save()

    def _reset_sync_state(self) -> None:
        self._watermark = None
        self._remote_marker = None
        self._last_seen_modified = None
        self._queued_exported_at = None
        self._pending = None

    def _set_status(self, status: SyncStatus) -> None:
        if status == self._status:
            return
        self._status = status
        logger.info("sync_status_changed", status=status.value)
        self._status_changed.emit(status)

    def _fail(
        self,
        kind: ErrorKind,
        message: str,
        recoverable: bool,
        status: SyncStatus,
    ) -> None:
        self._last_error = SyncErrorInfo(kind=kind, message=message, recoverable=recoverable)
        self._set_status(status)

    async def _handle_error(self, error: Exception) -> LoadOutcome:
        """Map an exception onto last_error and status. Returns the matching load outcome."""
        name = self._provider.get_display_name() if self._provider else None

        if isinstance(error, PermissionDeniedError):
            self._fail(ErrorKind.PERMISSION, str(error), True, SyncStatus.NEEDS_PERMISSION)
            await self._audit(AuditEventBuilder.permission_required(name or "", str(error)))
            return LoadOutcome.FAILED

        if isinstance(error, ConnectionError):
            self._fail(ErrorKind.TRANSIENT, str(error), True, SyncStatus.READY)
            if self._audit_logger:
                await self._audit_logger.log_provider_error(name or "", str(error), recoverable=True)
            return LoadOutcome.FAILED

        if isinstance(error, CredentialError):
            self._fail(ErrorKind.CREDENTIAL, str(error), True, SyncStatus.READY)
            await self._audit(AuditEventBuilder.credential_rejected(name or ""))
            return LoadOutcome.CREDENTIAL_ERROR

        if isinstance(error, SyncFormatError):
            self._fail(ErrorKind.FORMAT, str(error), False, SyncStatus.ERROR)
            await self._audit(AuditEventBuilder.format_rejected(name or "", str(error)))
            return LoadOutcome.FORMAT_ERROR

        if isinstance(error, StorageError):
            self._fail(ErrorKind.UNEXPECTED, str(error), False, SyncStatus.ERROR)
            if self._audit_logger:
                await self._audit_logger.log_provider_error(name or "", str(error), recoverable=False)
            return LoadOutcome.FAILED

        logger.error("sync_unexpected_error", error=str(error), exc_info=error)
        self._fail(ErrorKind.UNEXPECTED, str(error), False, SyncStatus.ERROR)
        if self._audit_logger:
            await self._audit_logger.log_error(type(error).__name__, str(error))
        return LoadOutcome.FAILED

    async def _audit(self, event: AuditEvent) -> None:
        if self._audit_logger:
            if event.family_id is None:
                event.family_id = self._session.family_id
            await self._audit_logger.log(event)


def _is_newer(candidate: Optional[str], reference: Optional[str]) -> bool:
    """True if ``candidate`` exists and is later than ``reference`` (or there is no reference)."""
    candidate_time = parse_iso(candidate)
    if candidate_time is None:
        return False
    reference_time = parse_iso(reference)
    return reference_time is None or candidate_time > reference_time


def create_app_components(
    provider_type: Optional[Union[ProviderType, str]] = None,
    wal_channel: Optional[WALChannel] = None,
    session: Optional[SyncSession] = None,
    use_audit_storage: bool = True,
) -> tuple[SyncOrchestrator, StoreRegistry, Optional[StorageProvider]]:
    """
    Factory function to create all sync components.

    Args:
        provider_type: Which sync target to build from settings
                      (None = build none; call ``configure`` later).
        wal_channel: Where the settings WAL lives. Defaults to the
                    configured WAL directory.
        session: Session to use (a fresh one if None).
        use_audit_storage: Keep audit events in memory as well as logging them.

    Returns:
        (orchestrator, registry, provider)
    """
    settings = get_settings()

    if wal_channel is None:
        try:
            wal_channel = FileWALChannel(settings.local_file.wal_directory)
        except Exception as e:
            # Local file settings not configured - keep the WAL in memory
            logger.warning("wal_directory_not_configured", error=str(e))
            wal_channel = MemoryWALChannel()

    session = session or SyncSession()
    wal = SettingsWAL(
        wal_channel,
        family_id=session.family_id,
    )
    registry = StoreRegistry.create(wal)

    audit_logger = AuditLogger(
        InMemoryAuditStorage(settings.app.audit_buffer_size) if use_audit_storage else None
    )

    provider: Optional[StorageProvider] = None
    if provider_type is not None:
        provider_type = ProviderType(provider_type)
        try:
            if provider_type == ProviderType.LOCAL_FILE:
                provider = LocalFileProvider(settings.local_file.file_path)
            elif provider_type == ProviderType.GOOGLE_DRIVE:
                provider = GoogleDriveProvider()
            else:
                raise ValueError(f"No provider can be built for {provider_type.value}")
        except Exception as e:
            # Provider not configured - continue without it
            logger.warning("provider_not_configured", provider=provider_type.value, error=str(e))
            provider = None

    orchestrator = SyncOrchestrator(
        registry,
        session=session,
        audit_logger=audit_logger,
        timing=settings.timing,
    )
    return orchestrator, registry, provider
