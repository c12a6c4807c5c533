import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from wa_gateway.core.errors import StoreConnectionError, StoreError

logger = logging.getLogger(__name__)

# Record id of the browser credential inside a client's namespace
CREDENTIAL_RECORD_ID = "credential"


@dataclass
class CredentialRecord:
    """Authentication material that lets a session resume without a new QR scan.

    The payload is whatever the browser layer produced; it is stored and
    returned untouched.
    """

    client_id: str
    payload: Any
    updated_at: float = field(default_factory=time.time)


class CredentialStore:
    """Interface the controller and the snapshot cache rely on."""

    def connect(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def has_credential(self, client_id: str) -> bool:
        raise NotImplementedError

    def load_credential(self, client_id: str) -> Optional[CredentialRecord]:
        raise NotImplementedError

    def save_credential(self, record: CredentialRecord) -> None:
        raise NotImplementedError

    def list_records(self, namespace: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def upsert_records(self, namespace: str, records: List[Dict[str, Any]]) -> int:
        raise NotImplementedError

    def count_records(self, namespace: str) -> int:
        raise NotImplementedError

    def read_backup(self, slot: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def write_backup(self, slot: str, document: Dict[str, Any]) -> None:
        raise NotImplementedError


def parse_store_url(url: str) -> str:
    """Turn a connection string into a sqlite database path.

    Accepts `sqlite:///relative.db`, `sqlite:////abs/path.db`, `sqlite://:memory:`
    or a bare filesystem path.
    """
    if url.startswith("sqlite://"):
        path = url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        if not path:
            raise StoreConnectionError(f"No database path in store URL: {url!r}")
        return path
    if "://" in url:
        scheme = url.split("://", 1)[0]
        raise StoreConnectionError(f"Unsupported store scheme {scheme!r} (expected sqlite)")
    return url


class SqliteCredentialStore(CredentialStore):
    """Credential store on a single sqlite database.

    Two tables: `session_records` holds the primary namespace (one row per
    (namespace, record_id)), `session_backups` holds one snapshot document per slot.
    """

    def __init__(self, url: str):
        self.url = url
        self.path = parse_store_url(url)
        self.conn: Optional[sqlite3.Connection] = None

    def connect(self):
        try:
            if self.path != ":memory:":
                directory = os.path.dirname(self.path)
                if directory:
                    Path(directory).mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(self.path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            c = conn.cursor()
            c.execute('''
                CREATE TABLE IF NOT EXISTS session_records (
                    namespace TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (namespace, record_id)
                )
            ''')
            c.execute('''
                CREATE TABLE IF NOT EXISTS session_backups (
                    slot TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            ''')
            conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise StoreConnectionError(f"Could not open credential store at {self.path}: {e}") from e

        self.conn = conn
        logger.info("✅ Credential store ready at %s", self.path)

    def close(self):
        if self.conn is not None:
            self.conn.close()
            self.conn = None
            logger.info("Credential store closed")

    def _cursor(self) -> sqlite3.Cursor:
        if self.conn is None:
            raise StoreError("Credential store is not connected")
        return self.conn.cursor()

    def has_credential(self, client_id):
        try:
            c = self._cursor()
            c.execute(
                "SELECT 1 FROM session_records WHERE namespace=? AND record_id=? LIMIT 1",
                (client_id, CREDENTIAL_RECORD_ID),
            )
            return c.fetchone() is not None
        except sqlite3.Error as e:
            raise StoreError(f"Presence check failed for {client_id}: {e}") from e

    def load_credential(self, client_id):
        try:
            c = self._cursor()
            c.execute(
                "SELECT payload, updated_at FROM session_records WHERE namespace=? AND record_id=?",
                (client_id, CREDENTIAL_RECORD_ID),
            )
            row = c.fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Could not load credential for {client_id}: {e}") from e

        if row is None:
            return None
        return CredentialRecord(client_id=client_id, payload=json.loads(row["payload"]), updated_at=row["updated_at"])

    def save_credential(self, record):
        self.upsert_records(record.client_id, [{
            "record_id": CREDENTIAL_RECORD_ID,
            "payload": record.payload,
            "updated_at": record.updated_at,
        }])

    def list_records(self, namespace):
        try:
            c = self._cursor()
            c.execute(
                "SELECT record_id, payload, updated_at FROM session_records WHERE namespace=? ORDER BY record_id",
                (namespace,),
            )
            rows = c.fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Could not list records for {namespace}: {e}") from e

        return [
            {"record_id": row["record_id"], "payload": json.loads(row["payload"]), "updated_at": row["updated_at"]}
            for row in rows
        ]

    def upsert_records(self, namespace, records):
        try:
            c = self._cursor()
            for record in records:
                c.execute('''
                    INSERT INTO session_records (namespace, record_id, payload, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(namespace, record_id)
                    DO UPDATE SET payload=excluded.payload, updated_at=excluded.updated_at
                ''', (
                    namespace,
                    record["record_id"],
                    json.dumps(record["payload"]),
                    record.get("updated_at") or time.time(),
                ))
            self.conn.commit()
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise StoreError(f"Could not write records for {namespace}: {e}") from e
        return len(records)

    def count_records(self, namespace):
        try:
            c = self._cursor()
            c.execute("SELECT COUNT(*) FROM session_records WHERE namespace=?", (namespace,))
            return c.fetchone()[0]
        except sqlite3.Error as e:
            raise StoreError(f"Could not count records for {namespace}: {e}") from e

    def read_backup(self, slot):
        try:
            c = self._cursor()
            c.execute("SELECT document FROM session_backups WHERE slot=?", (slot,))
            row = c.fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Could not read backup slot {slot}: {e}") from e
        return json.loads(row["document"]) if row else None

    def write_backup(self, slot, document):
        try:
            c = self._cursor()
            c.execute('''
                INSERT INTO session_backups (slot, document, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(slot) DO UPDATE SET document=excluded.document, updated_at=excluded.updated_at
            ''', (slot, json.dumps(document), time.time()))
            self.conn.commit()
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise StoreError(f"Could not write backup slot {slot}: {e}") from e


def create_store(url: str) -> CredentialStore:
    """Pick the store implementation for a connection string."""
    return SqliteCredentialStore(url)
