import logging

import httpx

from core.errors import (
    FailedPrecondition,
    Internal,
    InvalidArgument,
    PermissionDenied,
    Unauthenticated,
)

logger = logging.getLogger(__name__)

_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (Unauthenticated, InvalidArgument, FailedPrecondition, PermissionDenied, Internal)
}


class DriveLinkApiClient:
    """
    Async client for the Drive Link API, authenticated as one caller.

    Serves as the broker for LinkingHandshake (create_authorization_url /
    exchange_code). Error envelopes come back as the matching DriveLinkError.
    """

    def __init__(
        self,
        base_url: str,
        id_token: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {id_token}"}
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _call(self, method: str, path: str, json: dict | None = None) -> dict:
        url = f"{self._base_url}{path}"
        try:
            response = await self._http.request(method, url, json=json, headers=self._headers)
        except httpx.RequestError as e:
            logger.warning(f"Request to {url} failed: {e}")
            raise Internal(f"Could not reach Drive Link API: {e}") from e

        if response.status_code < 300:
            return response.json()

        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        error_cls = _ERRORS_BY_CODE.get(error.get("status"), Internal)
        message = error.get("message") or f"HTTP {response.status_code}: {response.text[:200]}"
        raise error_cls(message, details=error.get("details"))

    async def create_authorization_url(self) -> str:
        data = await self._call("POST", "/v1/drive/auth-url")
        return data["url"]

    async def exchange_code(self, code: str) -> dict:
        return await self._call("POST", "/v1/drive/link", json={"code": code})

    async def disconnect(self) -> dict:
        return await self._call("POST", "/v1/drive/disconnect")

    async def link_status(self) -> dict:
        return await self._call("GET", "/v1/drive/status")

    async def upload(
        self,
        file_content: str,
        file_name: str,
        file_type: str | None = None,
        title: str = "",
        description: str = "",
        subject: str = "",
        folder_name: str | None = None,
    ) -> dict:
        return await self._call(
            "POST",
            "/v1/files/upload",
            json={
                "fileContent": file_content,
                "fileName": file_name,
                "fileType": file_type,
                "title": title,
                "description": description,
                "subject": subject,
                "folderName": folder_name,
            },
        )

    async def delete(self, file_id: str, drive_file_id: str | None = None) -> dict:
        return await self._call(
            "POST",
            "/v1/files/delete",
            json={"fileId": file_id, "driveFileId": drive_file_id},
        )

