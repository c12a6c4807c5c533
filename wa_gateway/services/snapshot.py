import logging
import time

from wa_gateway.core.errors import StoreError
from wa_gateway.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)

BACKUP_SLOT = "latest"


class SnapshotCache:
    """Keeps one denormalized copy of a client's records in a backup slot.

    Store failures here are logged and reported as False: losing a backup
    write must never take down a working session.
    """

    def __init__(self, store: CredentialStore, namespace: str, slot: str = BACKUP_SLOT):
        self.store = store
        self.namespace = namespace
        self.slot = slot

    def backup(self) -> bool:
        try:
            records = self.store.list_records(self.namespace)
            if not records:
                logger.info("No records in %s yet, skipping backup", self.namespace)
                return False
            self.store.write_backup(self.slot, {
                "namespace": self.namespace,
                "records": records,
                "updated_at": time.time(),
            })
        except StoreError as e:
            logger.warning("⚠️ Session backup failed: %s", e)
            return False

        logger.info("💾 Session snapshot saved (%d records)", len(records))
        return True

    def restore(self) -> bool:
        """Copy the backup slot into the primary namespace if the namespace is empty.

        Returns True only when records were actually written.
        """
        try:
            if self.store.has_credential(self.namespace):
                return False

            document = self.store.read_backup(self.slot)
            if not document or not document.get("records"):
                logger.info("No session snapshot to restore")
                return False

            if document.get("namespace") not in (None, self.namespace):
                logger.warning(
                    "⚠️ Snapshot belongs to %s, not %s; ignoring it",
                    document.get("namespace"), self.namespace,
                )
                return False

            count = self.store.upsert_records(self.namespace, document["records"])
        except StoreError as e:
            logger.warning("⚠️ Session restore failed: %s", e)
            return False

        logger.info("♻️ Restored %d records from session snapshot", count)
        return True
