import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from core.store import DocumentStore

FILES_COLLECTION = "uploaded_files"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class UploadedFileRecord:
    drive_file_id: str
    owner_id: str
    file_name: str
    mime_type: str
    title: str = ""
    description: str = ""
    subject: str = ""
    file_url: str | None = None
    download_url: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return asdict(self)


class FileRecordStore:
    def __init__(self, store: DocumentStore):
        self._store = store

    def add(self, record: UploadedFileRecord) -> UploadedFileRecord:
        data = record.to_dict()
        data.pop("id")
        self._store.set(FILES_COLLECTION, record.id, data)
        return record

    def get(self, record_id: str) -> UploadedFileRecord | None:
        data = self._store.get(FILES_COLLECTION, record_id)
        if data is None:
            return None
        return UploadedFileRecord(id=record_id, **data)

    def delete(self, record_id: str) -> None:
        self._store.delete(FILES_COLLECTION, record_id)

