"""Tests for snapshot backup and restore."""

import pytest

from conftest import FakeStore
from wa_gateway.services.credential_store import CredentialRecord, SqliteCredentialStore
from wa_gateway.services.snapshot import BACKUP_SLOT, SnapshotCache

NAMESPACE = "render-stable-client"


@pytest.fixture
def sqlite_store(tmp_path):
    store = SqliteCredentialStore(str(tmp_path / "sessions.db"))
    store.connect()
    yield store
    store.close()


def populate(store):
    store.save_credential(CredentialRecord(client_id=NAMESPACE, payload={"cookies": ["c1"]}, updated_at=100.0))
    store.upsert_records(NAMESPACE, [{"record_id": "wa-indexeddb", "payload": {"keys": [1, 2]}, "updated_at": 101.0}])


def empty_primary(store):
    store.conn.execute("DELETE FROM session_records")
    store.conn.commit()


class TestBackup:
    def test_backup_writes_whole_namespace(self, sqlite_store):
        populate(sqlite_store)
        assert SnapshotCache(sqlite_store, NAMESPACE).backup() is True

        document = sqlite_store.read_backup(BACKUP_SLOT)
        assert document["namespace"] == NAMESPACE
        assert [r["record_id"] for r in document["records"]] == ["credential", "wa-indexeddb"]

    def test_backup_of_empty_namespace_is_skipped(self, sqlite_store):
        """Nothing to back up must not wipe an existing snapshot."""
        sqlite_store.write_backup(BACKUP_SLOT, {"namespace": NAMESPACE, "records": [{"record_id": "x", "payload": 1}]})
        assert SnapshotCache(sqlite_store, NAMESPACE).backup() is False
        assert sqlite_store.read_backup(BACKUP_SLOT)["records"][0]["record_id"] == "x"

    def test_backup_errors_are_swallowed(self):
        store = FakeStore()
        store.seed_credential(NAMESPACE)
        store.fail_writes = True
        assert SnapshotCache(store, NAMESPACE).backup() is False


class TestRestore:
    def test_backup_then_restore_round_trips(self, sqlite_store):
        """Restoring into an emptied store reproduces the original records."""
        populate(sqlite_store)
        original = sqlite_store.list_records(NAMESPACE)
        snapshots = SnapshotCache(sqlite_store, NAMESPACE)
        snapshots.backup()

        empty_primary(sqlite_store)
        assert sqlite_store.has_credential(NAMESPACE) is False

        assert snapshots.restore() is True
        assert sqlite_store.list_records(NAMESPACE) == original

    def test_restore_is_idempotent(self, sqlite_store):
        """A second restore over a populated store changes nothing."""
        populate(sqlite_store)
        snapshots = SnapshotCache(sqlite_store, NAMESPACE)
        snapshots.backup()
        empty_primary(sqlite_store)

        assert snapshots.restore() is True
        assert snapshots.restore() is False
        assert sqlite_store.count_records(NAMESPACE) == 2

    def test_primary_record_wins_over_snapshot(self, sqlite_store):
        """With a primary record present the snapshot is never applied."""
        sqlite_store.write_backup(BACKUP_SLOT, {
            "namespace": NAMESPACE,
            "records": [{"record_id": "credential", "payload": {"old": True}, "updated_at": 1.0}],
        })
        sqlite_store.save_credential(CredentialRecord(client_id=NAMESPACE, payload={"new": True}))

        assert SnapshotCache(sqlite_store, NAMESPACE).restore() is False
        assert sqlite_store.load_credential(NAMESPACE).payload == {"new": True}

    def test_no_snapshot(self, sqlite_store):
        assert SnapshotCache(sqlite_store, NAMESPACE).restore() is False

    def test_foreign_snapshot_is_ignored(self, sqlite_store):
        sqlite_store.write_backup(BACKUP_SLOT, {
            "namespace": "someone-else",
            "records": [{"record_id": "credential", "payload": {}, "updated_at": 1.0}],
        })
        assert SnapshotCache(sqlite_store, NAMESPACE).restore() is False
        assert sqlite_store.count_records(NAMESPACE) == 0

    def test_restore_errors_are_swallowed(self):
        store = FakeStore()
        store.backups[BACKUP_SLOT] = {"namespace": NAMESPACE, "records": [{"record_id": "credential", "payload": {}}]}
        store.fail_writes = True
        assert SnapshotCache(store, NAMESPACE).restore() is False
