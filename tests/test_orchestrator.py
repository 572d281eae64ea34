"""
Integration tests for the sync orchestrator.

Two devices are simulated by two orchestrators, each with its own stores,
sharing one storage provider.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from familysync.models.audit import AuditEventType
from familysync.models.status import ErrorKind, LoadOutcome, SaveOutcome, SyncStatus
from familysync.orchestrator import create_app_components
from familysync.services.crypto import PasswordSecret
from familysync.services.storage import (
    GoogleDriveProvider,
    InMemoryStorageProvider,
    LocalFileProvider,
)
from familysync.sync.codec import deserialize, serialize
from familysync.sync.session import SessionState, SyncSession
from familysync.sync.wal import MemoryWALChannel

from conftest import TEST_ITERATIONS, ago


def file_data(provider, secret=None):
    """Decoded content of the shared sync file."""
    return deserialize(provider.content, secret, TEST_ITERATIONS).parsed


def ids(records):
    return sorted(record["id"] for record in records or [])


async def event_types(device):
    return [event.event_type for event in await device.audit.get_recent_events(500)]


class GatedProvider(InMemoryStorageProvider):
    """Provider whose last-modified check can be held open."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = asyncio.Event()
        self.gate.set()
        self.checks = 0

    async def get_last_modified(self):
        self.checks += 1
        await self.gate.wait()
        return await super().get_last_modified()


class TestConfigure:
    """Tests for binding a sync target."""

    @pytest.mark.asyncio
    async def test_empty_target_gets_local_state(self, make_device, provider):
        """Test that configuring an empty target writes local data."""
        device = make_device()
        account = await device.registry.accounts.create({"name": "Checking", "balance": 100})

        assert await device.orchestrator.configure(provider) is True

        parsed = file_data(provider)
        assert ids(parsed.data.collection("accounts")) == [account["id"]]
        assert device.orchestrator.status == SyncStatus.READY
        assert device.orchestrator.watermark == parsed.exported_at
        assert device.orchestrator.session.state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_existing_file_is_merged_not_overwritten(self, make_device, provider):
        """Test that a second device merges before writing."""
        first = make_device()
        account = await first.registry.accounts.create({"name": "Checking"})
        await first.orchestrator.configure(provider)

        second = make_device()
        goal = await second.registry.store("goals").create({"name": "Vacation"})
        assert await second.orchestrator.configure(provider) is True

        parsed = file_data(provider)
        assert ids(parsed.data.collection("accounts")) == [account["id"]]
        assert ids(parsed.data.collection("goals")) == [goal["id"]]
        assert second.registry.accounts.get(account["id"]) is not None

    @pytest.mark.asyncio
    async def test_permission_flow(self, make_device):
        """Test needs-permission until access is granted."""
        provider = InMemoryStorageProvider(granted=False)
        device = make_device()

        assert await device.orchestrator.configure(provider) is False
        assert device.orchestrator.status == SyncStatus.NEEDS_PERMISSION

        assert await device.orchestrator.request_permission() is True
        assert device.orchestrator.status == SyncStatus.READY
        result = await device.orchestrator.sync_now()
        assert result.outcome == SaveOutcome.SAVED

    @pytest.mark.asyncio
    async def test_corrupt_file_is_never_overwritten(self, make_device):
        """Test that an unreadable file stops sync instead of being replaced."""
        provider = InMemoryStorageProvider(b"this is not a sync file")
        device = make_device()
        await device.registry.accounts.create({"name": "Checking"})

        assert await device.orchestrator.configure(provider) is False

        assert device.orchestrator.status == SyncStatus.ERROR
        assert device.orchestrator.last_error.kind == ErrorKind.FORMAT
        assert provider.content == b"this is not a sync file"
        assert AuditEventType.FORMAT_REJECTED in await event_types(device)

    @pytest.mark.asyncio
    async def test_status_and_save_listeners(self, make_device, provider):
        """Test the status and save-complete subscriptions."""
        device = make_device()
        statuses = []
        saves = []
        device.orchestrator.on_status_change(statuses.append)
        device.orchestrator.on_save_complete(saves.append)

        await device.orchestrator.configure(provider)

        assert statuses[0] == SyncStatus.CONNECTING
        assert SyncStatus.SYNCING in statuses
        assert statuses[-1] == SyncStatus.READY
        assert saves == [device.orchestrator.watermark]

    @pytest.mark.asyncio
    async def test_audit_trail(self, make_device, provider):
        """Test that configuring is audited."""
        device = make_device()
        await device.orchestrator.configure(provider)

        events = await event_types(device)
        assert AuditEventType.SYNC_CONFIGURED in events
        assert AuditEventType.SAVE_COMPLETED in events


class TestCrossDeviceSync:
    """Tests for merges between two devices."""

    @pytest.mark.asyncio
    async def test_deletion_propagates(self, make_device, provider):
        """Test that a record deleted on one device disappears on the other."""
        first = make_device()
        account = await first.registry.accounts.create({"name": "Old card"})
        await first.orchestrator.configure(provider)

        second = make_device()
        await second.orchestrator.configure(provider)
        assert await second.registry.accounts.delete(account["id"]) is True
        assert await second.orchestrator.flush_pending_save() is True

        assert await first.orchestrator.poll_for_changes() is True

        assert first.registry.accounts.get(account["id"]) is None
        assert first.registry.ledger.is_deleted("account", account["id"])
        assert file_data(provider).data.collection("accounts") == []

    @pytest.mark.asyncio
    async def test_conflicting_save_is_refused(self, make_device, provider):
        """Test that a save on stale state reports a conflict instead of writing."""
        first = make_device()
        await first.orchestrator.configure(provider)
        second = make_device()
        await second.orchestrator.configure(provider)

        await second.registry.store("goals").create({"name": "New roof"})
        await second.orchestrator.save_now()
        writes = provider.write_count

        await first.registry.store("todos").create({"title": "Call bank"})
        result = await first.orchestrator.save_now()

        assert result.is_conflict is True
        assert provider.write_count == writes
        assert AuditEventType.SAVE_CONFLICT in await event_types(first)

    @pytest.mark.asyncio
    async def test_concurrent_edits_both_survive(self, make_device, provider):
        """Test that the debounced save resolves a conflict by merging."""
        first = make_device()
        await first.orchestrator.configure(provider)
        second = make_device()
        await second.orchestrator.configure(provider)

        goal = await second.registry.store("goals").create({"name": "New roof"})
        await second.orchestrator.flush_pending_save()

        todo = await first.registry.store("todos").create({"title": "Call bank"})
        assert await first.orchestrator.flush_pending_save() is True

        parsed = file_data(provider)
        assert ids(parsed.data.collection("goals")) == [goal["id"]]
        assert ids(parsed.data.collection("todos")) == [todo["id"]]
        assert first.registry.store("goals").get(goal["id"]) is not None

    @pytest.mark.asyncio
    async def test_force_sync_overwrites(self, make_device, provider):
        """Test that force_sync_now skips the conflict check."""
        first = make_device()
        await first.orchestrator.configure(provider)
        second = make_device()
        await second.orchestrator.configure(provider)
        await second.registry.store("goals").create({"name": "New roof"})
        await second.orchestrator.save_now()

        result = await first.orchestrator.force_sync_now()

        assert result.outcome == SaveOutcome.SAVED
        assert file_data(provider).data.collection("goals") == []

    @pytest.mark.asyncio
    async def test_sync_now_loads_when_remote_changed(self, make_device, provider):
        """Test that manual sync merges a newer file."""
        first = make_device()
        await first.orchestrator.configure(provider)
        second = make_device()
        await second.orchestrator.configure(provider)
        goal = await second.registry.store("goals").create({"name": "New roof"})
        await second.orchestrator.save_now()

        result = await first.orchestrator.sync_now()

        assert result.outcome == LoadOutcome.IMPORTED
        assert first.registry.store("goals").get(goal["id"]) is not None

    @pytest.mark.asyncio
    async def test_highlights_after_remote_change(self, make_device, provider):
        """Test that records arriving from another device are highlighted."""
        first = make_device()
        account = await first.registry.accounts.create({"name": "Checking", "balance": 1})
        await first.orchestrator.configure(provider)

        second = make_device()
        await second.orchestrator.configure(provider)
        assert second.orchestrator.highlights.is_new(account["id"])

        await asyncio.sleep(0.01)
        await first.registry.accounts.update(account["id"], {"balance": 2})
        await first.orchestrator.save_now()
        await second.orchestrator.poll_for_changes()

        assert second.orchestrator.highlights.is_modified(account["id"])
        assert second.registry.accounts.get(account["id"])["balance"] == 2


class TestSaveScheduling:
    """Tests for debouncing and reload suppression."""

    @pytest.mark.asyncio
    async def test_burst_of_changes_saves_once(self, make_device, provider):
        """Test that rapid changes produce a single write."""
        device = make_device()
        await device.orchestrator.configure(provider)
        writes = provider.write_count

        for title in ("a", "b", "c"):
            await device.registry.store("todos").create({"title": title})
        assert device.orchestrator.has_pending_save is True

        await asyncio.sleep(0.3)

        assert provider.write_count == writes + 1
        assert len(file_data(provider).data.collection("todos")) == 3

    @pytest.mark.asyncio
    async def test_reload_does_not_schedule_save(self, make_device, provider):
        """Test that repopulating stores after a load doesn't echo a save."""
        first = make_device()
        await first.registry.accounts.create({"name": "Checking"})
        await first.orchestrator.configure(provider)
        writes = provider.write_count

        second = make_device()
        await second.orchestrator.configure(provider)

        assert second.orchestrator.has_pending_save is False
        assert provider.write_count == writes

    @pytest.mark.asyncio
    async def test_no_provider_means_no_save(self, make_device):
        """Test that changes before configure aren't scheduled."""
        device = make_device()
        await device.registry.accounts.create({"name": "Checking"})
        assert device.orchestrator.has_pending_save is False
        result = await device.orchestrator.save()
        assert result.outcome == SaveOutcome.SKIPPED


class TestPolling:
    """Tests for change detection by polling."""

    @pytest.mark.asyncio
    async def test_unchanged_file_is_not_loaded(self, make_device, provider):
        """Test that a poll tick without changes does nothing."""
        device = make_device()
        await device.orchestrator.configure(provider)
        assert await device.orchestrator.poll_for_changes() is False
        assert AuditEventType.LOAD_COMPLETED not in await event_types(device)

    @pytest.mark.asyncio
    async def test_tick_in_flight_suppresses_another(self, make_device):
        """Test that overlapping poll ticks don't both run."""
        provider = GatedProvider()
        device = make_device()
        await device.orchestrator.configure(provider)

        provider.gate.clear()
        checks = provider.checks
        tick = asyncio.ensure_future(device.orchestrator.poll_for_changes())
        await asyncio.sleep(0)

        assert await device.orchestrator.poll_for_changes() is False
        assert provider.checks == checks + 1

        provider.gate.set()
        assert await tick is False

    @pytest.mark.asyncio
    async def test_poll_loop_picks_up_remote_changes(self, make_device, provider):
        """Test start_polling / stop_polling."""
        first = make_device()
        await first.orchestrator.configure(provider)
        second = make_device()
        await second.orchestrator.configure(provider)

        second.orchestrator.start_polling()
        assert second.orchestrator.is_polling is True
        goal = await first.registry.store("goals").create({"name": "Bike"})
        await first.orchestrator.save_now()
        await asyncio.sleep(0.3)
        await second.orchestrator.stop_polling()

        assert second.registry.store("goals").get(goal["id"]) is not None
        assert second.orchestrator.is_polling is False


class TestOfflineHandling:
    """Tests for transient provider failures."""

    @pytest.mark.asyncio
    async def test_failed_write_is_flushed_on_next_poll(self, make_device, drive_client):
        """Test the offline queue round trip through the orchestrator."""
        provider = GoogleDriveProvider(
            client=drive_client,
            file_name="family.beanpod",
            folder_name="familysync",
        )
        device = make_device()
        assert await device.orchestrator.configure(provider) is True

        drive_client.writes_fail = True
        goal = await device.registry.store("goals").create({"name": "Car"})
        result = await device.orchestrator.save_now()

        assert result.outcome == SaveOutcome.FAILED
        assert device.orchestrator.last_error.kind == ErrorKind.TRANSIENT
        assert device.orchestrator.status == SyncStatus.READY
        assert provider.has_pending_writes is True

        drive_client.writes_fail = False
        assert await device.orchestrator.poll_for_changes() is False

        assert provider.has_pending_writes is False
        assert device.orchestrator.last_error is None
        content = json.loads(drive_client.files[provider.file_id])
        assert [g["id"] for g in content["data"]["goals"]] == [goal["id"]]
        assert AuditEventType.OFFLINE_SAVE_FLUSHED in await event_types(device)

    @pytest.mark.asyncio
    async def test_outage_clears_on_next_successful_poll(self, make_device, drive_client):
        """Test that a transient error is cleared once the provider answers."""
        provider = GoogleDriveProvider(
            client=drive_client,
            file_name="family.beanpod",
            folder_name="familysync",
        )
        device = make_device()
        await device.orchestrator.configure(provider)

        drive_client.online = False
        assert await device.orchestrator.poll_for_changes() is False
        assert device.orchestrator.last_error.kind == ErrorKind.TRANSIENT

        drive_client.online = True
        await device.orchestrator.poll_for_changes()
        assert device.orchestrator.last_error is None


class TestEncryption:
    """Tests for encrypted sync files."""

    @pytest.mark.asyncio
    async def test_password_flow(self, make_device, provider):
        """Test needs-password, a wrong password, then the right one."""
        first = make_device()
        account = await first.registry.accounts.create({"name": "Savings"})
        await first.orchestrator.configure(provider)
        result = await first.orchestrator.enable_encryption(PasswordSecret("hunter2"))
        assert result.outcome == SaveOutcome.SAVED
        assert json.loads(provider.content)["encrypted"] is True

        second = make_device()
        assert await second.orchestrator.configure(provider) is True
        assert second.orchestrator.pending_encrypted_file is not None
        assert second.registry.accounts.get(account["id"]) is None

        wrong = await second.orchestrator.decrypt_pending(PasswordSecret("wrong"))
        assert wrong.outcome == LoadOutcome.CREDENTIAL_ERROR
        assert second.orchestrator.last_error.kind == ErrorKind.CREDENTIAL
        assert second.orchestrator.pending_encrypted_file is not None

        right = await second.orchestrator.decrypt_pending(PasswordSecret("hunter2"))
        assert right.outcome == LoadOutcome.IMPORTED
        assert second.registry.accounts.get(account["id"]) is not None
        assert second.orchestrator.pending_encrypted_file is None
        assert second.orchestrator.session.encryption_required is True

        await second.registry.store("goals").create({"name": "Trip"})
        assert (await second.orchestrator.save_now()).outcome == SaveOutcome.SAVED
        assert json.loads(provider.content)["encrypted"] is True

    @pytest.mark.asyncio
    async def test_encryption_required_without_secret_skips(self, make_device, provider):
        """Test that nothing is written in plaintext when encryption is on."""
        device = make_device(SyncSession(encryption_required=True))
        await device.registry.accounts.create({"name": "Savings"})

        await device.orchestrator.configure(provider)

        assert provider.write_count == 0
        assert AuditEventType.SAVE_SKIPPED in await event_types(device)

    @pytest.mark.asyncio
    async def test_disable_encryption(self, make_device, provider):
        """Test rewriting the file as plaintext."""
        device = make_device(SyncSession(secret=PasswordSecret("pw"), encryption_required=True))
        await device.orchestrator.configure(provider)
        assert json.loads(provider.content)["encrypted"] is True

        await device.orchestrator.disable_encryption()

        assert json.loads(provider.content)["encrypted"] is False
        assert device.registry.settings.settings["encryptionEnabled"] is False
        assert file_data(provider).data.settings["encryptionEnabled"] is False


class TestFamilyGuard:
    """Tests for family identity checks."""

    @pytest.mark.asyncio
    async def test_other_family_file_is_rejected(self, make_device, provider):
        """Test that a file of another family is never merged."""
        first = make_device(SyncSession(family_id="fam-a", family_name="Rivera"))
        await first.registry.accounts.create({"name": "Checking"})
        await first.orchestrator.configure(provider)
        writes = provider.write_count

        intruder = make_device(SyncSession(family_id="fam-b"))
        assert await intruder.orchestrator.configure(provider) is False

        assert intruder.orchestrator.status == SyncStatus.ERROR
        assert intruder.orchestrator.last_error.kind == ErrorKind.FAMILY_MISMATCH
        assert intruder.registry.accounts.items == []
        assert provider.write_count == writes

    @pytest.mark.asyncio
    async def test_family_is_adopted_from_file(self, make_device, provider):
        """Test that a device without a family takes the file's."""
        first = make_device(SyncSession(family_id="fam-a", family_name="Rivera"))
        await first.orchestrator.configure(provider)

        second = make_device()
        await second.orchestrator.configure(provider)

        assert second.orchestrator.session.family_id == "fam-a"
        assert second.orchestrator.session.family_name == "Rivera"
        assert second.registry.settings.wal.family_id == "fam-a"


class TestSettingsRecovery:
    """Tests for settings WAL replay after a load."""

    @staticmethod
    def remote_with_settings(exported_at: str) -> InMemoryStorageProvider:
        return InMemoryStorageProvider(serialize(
            {},
            [],
            {"id": "app_settings", "currency": "USD", "updatedAt": exported_at},
            exported_at=exported_at,
        ))

    @pytest.mark.asyncio
    async def test_unsaved_change_is_replayed(self, make_device):
        """Test that a settings change newer than the file survives a load."""
        device = make_device()
        device.registry.settings.wal.append({"currency": "EUR"})
        provider = self.remote_with_settings(ago(hours=1))

        assert await device.orchestrator.configure(provider) is True

        assert device.registry.settings.settings["currency"] == "EUR"
        assert file_data(provider).data.settings["currency"] == "EUR"
        assert device.registry.settings.wal.read() is None
        assert AuditEventType.WAL_RECOVERED in await event_types(device)

    @pytest.mark.asyncio
    async def test_stale_entry_is_discarded(self, make_device):
        """Test that an entry older than the window is dropped."""
        device = make_device()
        device.registry.settings.wal.append(
            {"currency": "EUR"},
            timestamp=datetime.now(timezone.utc) - timedelta(hours=48),
        )
        provider = self.remote_with_settings(ago(hours=72))

        await device.orchestrator.configure(provider)

        assert device.registry.settings.settings["currency"] == "USD"
        assert device.registry.settings.wal.read() is None
        assert AuditEventType.WAL_DISCARDED in await event_types(device)

    @pytest.mark.asyncio
    async def test_entry_older_than_file_is_discarded(self, make_device):
        """Test that a file exported after the entry wins."""
        device = make_device()
        device.registry.settings.wal.append(
            {"currency": "EUR"},
            timestamp=datetime.now(timezone.utc) - timedelta(hours=2),
        )
        provider = self.remote_with_settings(ago(hours=1))

        await device.orchestrator.configure(provider)

        assert device.registry.settings.settings["currency"] == "USD"
        assert device.registry.settings.wal.read() is None


class TestLifecycle:
    """Tests for disconnect and sign-out."""

    @pytest.mark.asyncio
    async def test_disconnect_keeps_local_data(self, make_device, provider):
        """Test that disconnecting only forgets the target."""
        device = make_device()
        account = await device.registry.accounts.create({"name": "Checking"})
        await device.orchestrator.configure(provider)

        await device.orchestrator.disconnect()

        assert device.orchestrator.provider is None
        assert device.orchestrator.status == SyncStatus.NOT_CONFIGURED
        assert device.registry.accounts.get(account["id"]) is not None
        await device.registry.accounts.update(account["id"], {"name": "Main"})
        assert device.orchestrator.has_pending_save is False

    @pytest.mark.asyncio
    async def test_sign_out_flushes_then_clears(self, make_device, provider):
        """Test that sign-out saves pending work and leaves nothing behind."""
        channel = MemoryWALChannel()
        device = make_device(SyncSession(family_id="fam-a"), channel=channel)
        await device.orchestrator.configure(provider)
        account = await device.registry.accounts.create({"name": "Checking"})
        await device.registry.accounts.delete(account["id"])
        await device.registry.settings.update({"currency": "EUR"})
        writes = provider.write_count

        await device.orchestrator.sign_out()

        assert provider.write_count == writes + 1
        assert len(device.registry.ledger) == 0
        assert channel.keys() == []
        assert device.orchestrator.session.state == SessionState.TORN_DOWN
        assert device.orchestrator.session.family_id is None
        assert device.orchestrator.status == SyncStatus.NOT_CONFIGURED

    @pytest.mark.asyncio
    async def test_sign_out_waits_for_running_save(self, make_device):
        """Test that a debounced save already in flight still writes its tombstone."""
        provider = GatedProvider()
        device = make_device()
        await device.orchestrator.configure(provider)
        account = await device.registry.accounts.create({"name": "Checking"})
        await device.orchestrator.flush_pending_save()

        provider.gate.clear()
        checks = provider.checks
        await device.registry.accounts.delete(account["id"])
        await asyncio.sleep(0.2)
        assert provider.checks == checks + 1

        sign_out = asyncio.ensure_future(device.orchestrator.sign_out())
        await asyncio.sleep(0.05)
        assert not sign_out.done()

        provider.gate.set()
        await sign_out

        parsed = file_data(provider)
        assert ids(parsed.data.collection("accounts")) == []
        assert [t.id for t in parsed.data.tombstones()] == [account["id"]]
        assert AuditEventType.SAVE_CONFLICT not in await event_types(device)
        assert len(device.registry.ledger) == 0

    @pytest.mark.asyncio
    async def test_conflict_check_without_provider(self, make_device):
        """Test that checking for conflicts before configure reports none."""
        device = make_device()
        check = await device.orchestrator.check_for_conflicts()
        assert check.has_conflict is False
        assert check.remote_timestamp is None


class TestAppComponents:
    """Tests for create_app_components."""

    def test_without_provider(self, monkeypatch):
        """Test building components with no sync target configured."""
        monkeypatch.delenv("LOCAL_SYNC_FILE_PATH", raising=False)
        orchestrator, registry, provider = create_app_components(wal_channel=MemoryWALChannel())
        assert provider is None
        assert orchestrator.status == SyncStatus.NOT_CONFIGURED
        assert registry.accounts is not None

    def test_local_file_provider(self, monkeypatch, tmp_path):
        """Test building a local file provider from settings."""
        monkeypatch.setenv("LOCAL_SYNC_FILE_PATH", str(tmp_path / "family.beanpod"))
        monkeypatch.setenv("LOCAL_SYNC_WAL_DIRECTORY", str(tmp_path / "wal"))
        _, registry, provider = create_app_components(provider_type="local_file")
        assert isinstance(provider, LocalFileProvider)
        registry.settings.wal.append({"currency": "EUR"})
        assert (tmp_path / "wal").is_dir()

    def test_unconfigured_drive_falls_back_to_none(self, monkeypatch):
        """Test that missing Drive credentials don't break startup."""
        monkeypatch.delenv("GOOGLE_DRIVE_CREDENTIALS_PATH", raising=False)
        _, _, provider = create_app_components(
            provider_type="google_drive",
            wal_channel=MemoryWALChannel(),
        )
        assert provider is None
