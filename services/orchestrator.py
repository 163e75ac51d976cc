import base64
import binascii
import logging
import mimetypes

from core.errors import (
    DriveLinkError,
    Internal,
    InvalidArgument,
    PermissionDenied,
    Unauthenticated,
)
from core.file_records import FileRecordStore, UploadedFileRecord
from core.link_store import TokenStore
from services.drive_service import (
    DIRECT_DOWNLOAD_URL,
    DriveClientFactory,
    delete_file,
    ensure_folder,
    grant_public_read,
    is_auth_error,
    is_not_found,
    upload_bytes,
)

logger = logging.getLogger(__name__)


def decode_file_content(file_content: str) -> bytes:
    """Decode base64 upload content. Accepts a bare payload or a data: URL."""
    if not file_content:
        raise InvalidArgument("fileContent is required.")

    payload = file_content.strip()
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]

    try:
        content = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidArgument("fileContent is not valid base64.") from e

    if not content:
        raise InvalidArgument("fileContent is empty.")
    return content


class FileOrchestrator:
    """Upload/delete of user files in the linked Drive, plus their metadata records."""

    def __init__(
        self,
        clients: DriveClientFactory,
        tokens: TokenStore,
        records: FileRecordStore,
        folder_name: str,
        upload_timeout: float = 300.0,
        max_upload_bytes: int = 25 * 1024 * 1024,
        rollback_orphans: bool = True,
    ):
        self._clients = clients
        self._tokens = tokens
        self._records = records
        self._folder_name = folder_name
        self._upload_timeout = upload_timeout
        self._max_upload_bytes = max_upload_bytes
        self._rollback_orphans = rollback_orphans

    def _raise_drive_error(self, uid: str, exc: Exception, message: str):
        if isinstance(exc, DriveLinkError):
            raise exc
        if is_auth_error(exc):
            logger.warning(f"[{uid}] Drive grant rejected, clearing stored link: {exc}")
            self._tokens.clear(uid)
            raise Unauthenticated(
                "Google Drive connection expired. Link your account again."
            ) from exc
        logger.error(f"[{uid}] {message} {exc}")
        raise Internal(message, details=str(exc)) from exc

    def _rollback(self, service, uid: str, file_id: str) -> None:
        try:
            delete_file(service, file_id)
            logger.info(f"[{uid}] Rolled back orphaned Drive file {file_id}")
        except Exception as e:
            logger.error(f"[{uid}] Could not roll back orphaned Drive file {file_id}: {e}")

    def upload(
        self,
        uid: str,
        file_content: str,
        file_name: str,
        mime_type: str | None = None,
        title: str = "",
        description: str = "",
        subject: str = "",
        folder_name: str | None = None,
    ) -> dict:
        if not uid:
            raise Unauthenticated("Authentication required to upload files.")
        if not file_name or not file_name.strip():
            raise InvalidArgument("fileName is required.")

        content = decode_file_content(file_content)
        if len(content) > self._max_upload_bytes:
            raise InvalidArgument(
                f"File too large ({len(content)} bytes). "
                f"Maximum is {self._max_upload_bytes} bytes."
            )
        file_name = file_name.strip()
        folder_name = (folder_name or "").strip() or self._folder_name
        mime_type = mime_type or mimetypes.guess_type(file_name)[0] or "application/octet-stream"

        service = self._clients.get_client(uid, timeout=self._upload_timeout)

        file_id = None
        try:
            folder_id = ensure_folder(service, folder_name)
            drive_file = upload_bytes(service, content, file_name, mime_type, folder_id)
            file_id = drive_file["id"]
            grant_public_read(service, file_id)
        except Exception as e:
            if file_id and self._rollback_orphans and not is_auth_error(e):
                self._rollback(service, uid, file_id)
            self._raise_drive_error(uid, e, "Failed to upload to Google Drive.")

        direct_link = DIRECT_DOWNLOAD_URL.format(file_id=file_id)
        record = UploadedFileRecord(
            drive_file_id=file_id,
            owner_id=uid,
            file_name=file_name,
            mime_type=mime_type,
            title=title or "",
            description=description or "",
            subject=subject or "",
            file_url=drive_file.get("webViewLink"),
            download_url=direct_link,
        )
        try:
            self._records.add(record)
        except Exception as e:
            logger.exception(f"[{uid}] Failed to save metadata for Drive file {file_id}")
            if self._rollback_orphans:
                self._rollback(service, uid, file_id)
            raise Internal("Failed to save file metadata.", details=str(e)) from e

        logger.info(f"[{uid}] Upload complete: {file_name} (Drive ID: {file_id}, record {record.id})")
        return {
            "success": True,
            "file_id": file_id,
            "record_id": record.id,
            "web_view_link": drive_file.get("webViewLink"),
            "direct_download_link": direct_link,
        }

    def delete(self, uid: str, record_id: str, drive_file_id: str | None = None) -> dict:
        """Delete from Drive first, then the metadata record. A missing Drive file counts as deleted."""
        if not uid:
            raise Unauthenticated("Authentication required to delete files.")
        if not record_id:
            raise InvalidArgument("fileId is required.")

        record = self._records.get(record_id)
        if record is not None and record.owner_id != uid:
            raise PermissionDenied("You can only delete your own files.")
        if record is not None and drive_file_id and drive_file_id != record.drive_file_id:
            raise InvalidArgument("driveFileId does not match the file record.")

        service = self._clients.get_client(uid)

        drive_file_id = drive_file_id or (record.drive_file_id if record else None)
        if drive_file_id:
            try:
                delete_file(service, drive_file_id)
            except Exception as e:
                if is_not_found(e):
                    logger.info(f"[{uid}] Drive file {drive_file_id} already gone")
                else:
                    self._raise_drive_error(uid, e, "Failed to delete file from Google Drive.")

        try:
            self._records.delete(record_id)
        except Exception as e:
            logger.exception(f"[{uid}] Failed to delete metadata record {record_id}")
            raise Internal("Failed to delete file metadata.", details=str(e)) from e

        return {"success": True, "message": "File deleted."}
