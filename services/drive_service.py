import io
import logging
from typing import Callable

import httplib2
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from core.config import OAuthClientConfig
from core.errors import Unauthenticated
from core.link_store import TokenStore

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
DIRECT_DOWNLOAD_URL = "https://drive.google.com/uc?export=download&id={file_id}"


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------
def is_auth_error(exc: BaseException) -> bool:
    """True when the stored grant is no longer usable (revoked / expired refresh token)."""
    if isinstance(exc, RefreshError):
        return True
    if isinstance(exc, HttpError) and exc.resp.status == 401:
        return True
    return "invalid_grant" in str(exc)


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and exc.resp.status == 404


# ---------------------------------------------------------------------------
# Client factory
# ---------------------------------------------------------------------------
def _build_drive_service(credentials: Credentials, timeout: float):
    http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
    return build("drive", "v3", http=http, cache_discovery=False)


class DriveClientFactory:
    """Builds per-user Drive v3 clients from the stored refresh token."""

    def __init__(
        self,
        config: OAuthClientConfig,
        tokens: TokenStore,
        service_builder: Callable[[Credentials, float], object] = _build_drive_service,
        timeout: float = 30.0,
    ):
        self._config = config
        self._tokens = tokens
        self._service_builder = service_builder
        self._timeout = timeout

    def credentials_for(self, refresh_token: str) -> Credentials:
        # No access token: google-auth refreshes on the first request and
        # again whenever the short-lived token expires.
        return Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self._config.token_uri,
            client_id=self._config.client_id,
            client_secret=self._config.client_secret,
            scopes=list(self._config.scopes),
        )

    def get_client(self, uid: str, timeout: float | None = None):
        state = self._tokens.get(uid)
        if state is None or not state.refresh_token:
            raise Unauthenticated(
                "Google Drive is not linked for this user. Link your account again."
            )

        creds = self.credentials_for(state.refresh_token)
        return self._service_builder(creds, timeout or self._timeout)


# ---------------------------------------------------------------------------
# Drive operations
# ---------------------------------------------------------------------------
def _escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def ensure_folder(service, name: str) -> str:
    """
    Return the id of the root-level folder called `name`, creating it if missing.

    Lookup-then-create is not atomic: two concurrent first uploads for the
    same user can each create a folder. Later lookups pick the first match.
    """
    query = (
        "'root' in parents and "
        f"mimeType = '{FOLDER_MIME_TYPE}' and "
        f"name = '{_escape_query_value(name)}' and trashed = false"
    )
    res = service.files().list(q=query, spaces="drive", fields="files(id,name)").execute()
    files = res.get("files", [])
    if files:
        return files[0]["id"]

    created = service.files().create(
        body={"name": name, "mimeType": FOLDER_MIME_TYPE},
        fields="id",
    ).execute()
    logger.info(f"Created Drive folder '{name}' (ID: {created['id']})")
    return created["id"]


def upload_bytes(
    service,
    content: bytes,
    file_name: str,
    mime_type: str,
    folder_id: str | None = None,
) -> dict:
    """Upload raw bytes. Returns dict with 'id', 'name', 'webViewLink', 'webContentLink'."""
    file_metadata: dict = {"name": file_name, "mimeType": mime_type}
    if folder_id:
        file_metadata["parents"] = [folder_id]

    media = MediaIoBaseUpload(io.BytesIO(content), mimetype=mime_type, resumable=True)

    file = service.files().create(
        body=file_metadata,
        media_body=media,
        fields="id,name,webViewLink,webContentLink",
    ).execute()

    logger.info(f"Uploaded to Drive: {file.get('name', file_name)} (ID: {file['id']})")
    return file


def grant_public_read(service, file_id: str) -> None:
    """Anyone with the link can read, so consumers need no Drive credentials of their own."""
    service.permissions().create(
        fileId=file_id,
        body={"type": "anyone", "role": "reader"},
        fields="id",
    ).execute()


def delete_file(service, file_id: str) -> None:
    service.files().delete(fileId=file_id).execute()
    logger.info(f"Deleted Drive file {file_id}")
