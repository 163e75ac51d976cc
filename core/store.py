import copy
import json
import logging
import os
import threading
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class _DeleteField:
    def __repr__(self) -> str:
        return "DELETE_FIELD"


# Sentinel: passed as a field value to update() / set(merge=True) to remove that field
DELETE_FIELD = _DeleteField()


class DocumentNotFound(KeyError):
    pass


class WriteBatch:
    """Writes collected inside DocumentStore.transaction(), applied all at once on exit."""

    def __init__(self):
        self._ops: list[tuple] = []

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        self._ops.append(("set", collection, doc_id, dict(data), merge))

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self._ops.append(("update", collection, doc_id, dict(data), None))

    def delete(self, collection: str, doc_id: str) -> None:
        self._ops.append(("delete", collection, doc_id, None, None))

    def __len__(self) -> int:
        return len(self._ops)


def _apply_fields(doc: dict, data: dict) -> None:
    for key, value in data.items():
        if value is DELETE_FIELD:
            doc.pop(key, None)
        else:
            doc[key] = value


class DocumentStore:
    """
    Thread-safe document store: collections of dict documents keyed by id.

    Everything lives in memory. When `path` is given the whole store is
    loaded from that JSON file on start and rewritten after each committed
    write. Stored values must be JSON-serializable.
    """

    def __init__(self, path: str | None = None):
        self._lock = threading.RLock()
        self._path = path or None
        self._data: dict[str, dict[str, dict]] = {}

        if self._path and os.path.exists(self._path):
            with open(self._path) as f:
                self._data = json.load(f)
            logger.info(f"Loaded document store from {self._path}")

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------
    def get(self, collection: str, doc_id: str) -> dict | None:
        with self._lock:
            doc = self._data.get(collection, {}).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------
    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        with self.transaction() as batch:
            batch.set(collection, doc_id, data, merge=merge)

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        """Patch an existing document. Raises DocumentNotFound if it is absent."""
        with self.transaction() as batch:
            batch.update(collection, doc_id, data)

    def delete(self, collection: str, doc_id: str) -> None:
        with self.transaction() as batch:
            batch.delete(collection, doc_id)

    @contextmanager
    def transaction(self):
        """
        Collect writes into a WriteBatch and apply them atomically on exit.

        If the block raises, or any write fails to apply (e.g. update on a
        missing document), nothing is written.
        """
        with self._lock:
            batch = WriteBatch()
            yield batch
            if not len(batch):
                return

            staged = copy.deepcopy(self._data)
            for op, collection, doc_id, data, merge in batch._ops:
                docs = staged.setdefault(collection, {})
                if op == "set":
                    if merge and doc_id in docs:
                        _apply_fields(docs[doc_id], data)
                    else:
                        docs[doc_id] = {}
                        _apply_fields(docs[doc_id], data)
                elif op == "update":
                    if doc_id not in docs:
                        raise DocumentNotFound(f"{collection}/{doc_id}")
                    _apply_fields(docs[doc_id], data)
                elif op == "delete":
                    docs.pop(doc_id, None)

            self._persist(staged)
            self._data = staged

    def _persist(self, data: dict) -> None:
        if not self._path:
            return
        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self._path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self._path)
