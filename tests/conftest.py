import itertools
import re

import httplib2
import pytest
from googleapiclient.errors import HttpError

from core.config import OAuthClientConfig
from core.file_records import FileRecordStore
from core.link_store import TokenStore
from core.store import DocumentStore
from services.drive_service import FOLDER_MIME_TYPE, DriveClientFactory
from services.orchestrator import FileOrchestrator

FOLDER_NAME = "Schoolmaps Uploads"


def http_error(status: int, message: str = "error") -> HttpError:
    resp = httplib2.Response({"status": str(status)})
    content = ('{"error": {"message": "%s"}}' % message).encode()
    return HttpError(resp, content)


# ---------------------------------------------------------------------------
# In-process stand-in for the Drive v3 client
# ---------------------------------------------------------------------------
class _Call:
    def __init__(self, fn):
        self._fn = fn

    def execute(self):
        return self._fn()


class _Files:
    def __init__(self, drive: "FakeDrive"):
        self._drive = drive

    def list(self, q: str, **kwargs):
        return _Call(lambda: self._drive._list(q))

    def create(self, body: dict, media_body=None, fields: str = ""):
        return _Call(lambda: self._drive._create(body, media_body))

    def delete(self, fileId: str):
        return _Call(lambda: self._drive._delete(fileId))


class _Permissions:
    def __init__(self, drive: "FakeDrive"):
        self._drive = drive

    def create(self, fileId: str, body: dict, fields: str = ""):
        return _Call(lambda: self._drive._grant(fileId, body))


_NAME_RE = re.compile(r"name = '((?:[^'\\]|\\.)*)'")


class FakeDrive:
    """Records every call; `fail[op] = exc` makes that operation raise."""

    def __init__(self):
        self.items: dict[str, dict] = {}
        self.grants: dict[str, list[dict]] = {}
        self.calls: list[str] = []
        self.fail: dict[str, Exception] = {}
        self._ids = itertools.count(1)

    def files(self):
        return _Files(self)

    def permissions(self):
        return _Permissions(self)

    def _maybe_fail(self, op: str):
        self.calls.append(op)
        if op in self.fail:
            raise self.fail[op]

    def _list(self, q: str) -> dict:
        self._maybe_fail("files.list")
        name = re.sub(r"\\(.)", r"\1", _NAME_RE.search(q).group(1))
        matches = [
            {"id": item["id"], "name": item["name"]}
            for item in self.items.values()
            if item["mimeType"] == FOLDER_MIME_TYPE
            and item["name"] == name
            and "root" in item["parents"]
            and not item.get("trashed")
        ]
        return {"files": matches}

    def _create(self, body: dict, media_body) -> dict:
        is_folder = body.get("mimeType") == FOLDER_MIME_TYPE
        self._maybe_fail("folders.create" if is_folder else "files.create")
        file_id = f"drive-{next(self._ids)}"
        item = {
            "id": file_id,
            "name": body["name"],
            "mimeType": body.get("mimeType"),
            "parents": body.get("parents") or ["root"],
            "content": media_body.getbytes(0, media_body.size()) if media_body else None,
        }
        self.items[file_id] = item
        return {
            "id": file_id,
            "name": item["name"],
            "webViewLink": f"https://drive.google.com/file/d/{file_id}/view",
            "webContentLink": f"https://drive.google.com/uc?id={file_id}&export=download",
        }

    def _delete(self, file_id: str) -> str:
        self._maybe_fail("files.delete")
        if file_id not in self.items:
            raise http_error(404, f"File not found: {file_id}")
        del self.items[file_id]
        return ""

    def _grant(self, file_id: str, body: dict) -> dict:
        self._maybe_fail("permissions.create")
        self.grants.setdefault(file_id, []).append(body)
        return {"id": "anyoneWithLink"}

    def folders(self) -> list[dict]:
        return [i for i in self.items.values() if i["mimeType"] == FOLDER_MIME_TYPE]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def oauth_config():
    return OAuthClientConfig(
        client_id="client-id.apps.googleusercontent.com",
        client_secret="client-secret",
        redirect_uri="http://localhost:3000/auth/drive/callback",
        scopes=("https://www.googleapis.com/auth/drive.file",),
    )


@pytest.fixture
def store():
    return DocumentStore()


@pytest.fixture
def tokens(store):
    return TokenStore(store)


@pytest.fixture
def records(store):
    return FileRecordStore(store)


@pytest.fixture
def drive():
    return FakeDrive()


@pytest.fixture
def built_clients():
    """(credentials, timeout) of every client the factory built."""
    return []


@pytest.fixture
def clients(oauth_config, tokens, drive, built_clients):
    def service_builder(creds, timeout):
        built_clients.append((creds, timeout))
        return drive

    return DriveClientFactory(oauth_config, tokens, service_builder=service_builder, timeout=10.0)


@pytest.fixture
def orchestrator(clients, tokens, records):
    return FileOrchestrator(
        clients,
        tokens,
        records,
        folder_name=FOLDER_NAME,
        upload_timeout=120.0,
        max_upload_bytes=1024,
    )
