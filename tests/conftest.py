"""Shared fakes for the gateway tests."""

import asyncio
import time

import pytest

from wa_gateway.core.config import Settings
from wa_gateway.core.errors import SendError, StoreError
from wa_gateway.services.backoff import BackoffPolicy
from wa_gateway.services.controller import SessionController
from wa_gateway.services.credential_store import CREDENTIAL_RECORD_ID, CredentialRecord, CredentialStore

CLIENT_ID = "render-stable-client"
STORAGE_STATE = {"cookies": [{"name": "wa", "value": "1"}], "origins": []}


class FakeStore(CredentialStore):
    """In-memory CredentialStore that counts writes and can be told to fail."""

    def __init__(self):
        self.namespaces = {}
        self.backups = {}
        self.connected = False
        self.closed = False
        self.saves = 0
        self.fail_presence = 0
        self.fail_writes = False

    def connect(self):
        self.connected = True

    def close(self):
        self.closed = True

    def has_credential(self, client_id):
        if self.fail_presence:
            self.fail_presence -= 1
            raise StoreError("store offline")
        return CREDENTIAL_RECORD_ID in self.namespaces.get(client_id, {})

    def load_credential(self, client_id):
        row = self.namespaces.get(client_id, {}).get(CREDENTIAL_RECORD_ID)
        if row is None:
            return None
        return CredentialRecord(client_id=client_id, payload=row["payload"], updated_at=row["updated_at"])

    def save_credential(self, record):
        self.saves += 1
        self.upsert_records(record.client_id, [{
            "record_id": CREDENTIAL_RECORD_ID,
            "payload": record.payload,
            "updated_at": record.updated_at,
        }])

    def list_records(self, namespace):
        return [dict(row) for _, row in sorted(self.namespaces.get(namespace, {}).items())]

    def upsert_records(self, namespace, records):
        if self.fail_writes:
            raise StoreError("write refused")
        rows = self.namespaces.setdefault(namespace, {})
        for record in records:
            rows[record["record_id"]] = dict(record)
        return len(records)

    def count_records(self, namespace):
        return len(self.namespaces.get(namespace, {}))

    def read_backup(self, slot):
        return self.backups.get(slot)

    def write_backup(self, slot, document):
        if self.fail_writes:
            raise StoreError("write refused")
        self.backups[slot] = document

    def seed_credential(self, client_id=CLIENT_ID, payload=None):
        self.namespaces.setdefault(client_id, {})[CREDENTIAL_RECORD_ID] = {
            "record_id": CREDENTIAL_RECORD_ID,
            "payload": payload if payload is not None else STORAGE_STATE,
            "updated_at": time.time(),
        }


class FakeSession:
    """Stands in for WhatsAppSession; tests push events through emit()."""

    def __init__(self, mode, credential, on_event, fail=None, gate=None):
        self.mode = mode
        self.credential = credential
        self.on_event = on_event
        self.fail = fail
        self.gate = gate
        self.initialized = False
        self.closed = False
        self.sent = []
        self.send_error = None
        self.snapshot_error = None
        self.close_delay = 0

    async def initialize(self):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        self.initialized = True

    def emit(self, event):
        self.on_event(event)

    async def snapshot_credentials(self):
        if self.snapshot_error is not None:
            raise self.snapshot_error
        return STORAGE_STATE

    async def send_message(self, phone, message, image_path=None):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((phone, message, image_path))

    async def close(self):
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed = True


class FakeSessionFactory:
    """Records every session the controller asks for."""

    def __init__(self):
        self.sessions = []
        self.failures = []
        self.gate = None

    def __call__(self, mode, credential, on_event):
        fail = self.failures.pop(0) if self.failures else None
        session = FakeSession(mode, credential, on_event, fail=fail, gate=self.gate)
        self.sessions.append(session)
        return session

    @property
    def last(self):
        return self.sessions[-1]


class SleepRecorder:
    """Replacement for asyncio.sleep that records delays and the controller state at each call."""

    def __init__(self):
        self.delays = []
        self.states = []
        self.controller = None

    async def __call__(self, delay):
        self.delays.append(delay)
        if self.controller is not None:
            self.states.append(self.controller.state)
        await asyncio.sleep(0)


async def settle_retries(controller):
    """Run pending retry tasks until none is scheduled."""
    for _ in range(50):
        task = controller.pending_retry
        if task is None or task.done():
            return
        await task
    raise AssertionError("retries never settled")


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def factory():
    return FakeSessionFactory()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
async def controller(store, factory, sleeper):
    ctrl = SessionController(
        store,
        factory,
        client_id=CLIENT_ID,
        backoff=BackoffPolicy(base_delay=2, max_delay=30, max_attempts=6, slow_interval=30),
        settle_delay=15,
        persist_interval=3600,
        sleep=sleeper,
    )
    sleeper.controller = ctrl
    yield ctrl
    await ctrl.shutdown(timeout=1)


@pytest.fixture
def settings():
    return Settings(store_url="sqlite://:memory:", api_password="s3cret", startup_delay=0)
