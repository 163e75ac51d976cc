import asyncio
import html
import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from core.config import OAuthClientConfig, settings
from core.errors import DriveLinkError, InvalidArgument, Unauthenticated
from core.file_records import FileRecordStore
from core.link_store import TokenStore
from core.store import DocumentStore
from services.auth_service import OAuthBroker
from services.drive_service import DriveClientFactory
from services.link_handshake import AUTH_CODE_MESSAGE_TYPE
from services.orchestrator import FileOrchestrator

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Google may return a superset of the requested scopes (e.g. "openid"); oauthlib
# reads this when the code is exchanged
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------
@dataclass
class Services:
    broker: OAuthBroker
    files: FileOrchestrator


def build_services(store: DocumentStore | None = None) -> Services:
    oauth_config = OAuthClientConfig.from_settings(settings)
    store = store or DocumentStore(settings.store_path or None)
    tokens = TokenStore(store)
    clients = DriveClientFactory(oauth_config, tokens, timeout=settings.drive_timeout)
    return Services(
        broker=OAuthBroker(oauth_config, tokens),
        files=FileOrchestrator(
            clients,
            tokens,
            FileRecordStore(store),
            folder_name=settings.drive_folder_name,
            upload_timeout=settings.upload_timeout,
            max_upload_bytes=settings.max_upload_size_mb * 1024 * 1024,
            rollback_orphans=settings.rollback_orphaned_uploads,
        ),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
_bearer = HTTPBearer(auto_error=False)


async def get_caller_uid(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(_bearer),
) -> str:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated("Authentication required.")
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        raise Unauthenticated("Invalid or expired credentials.") from e

    uid = payload.get("sub")
    if not uid:
        raise Unauthenticated("Invalid or expired credentials.")
    return str(uid)


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str


class AuthUrlResponse(CamelModel):
    url: str


class ExchangeCodeRequest(CamelModel):
    code: str = ""


class ResultResponse(CamelModel):
    success: bool
    message: str = ""


class LinkStatusResponse(CamelModel):
    linked: bool
    last_linked_at: Optional[str] = None


class UploadRequest(CamelModel):
    file_content: str = ""
    file_name: str = ""
    file_type: Optional[str] = None
    title: str = ""
    description: str = ""
    subject: str = ""
    folder_name: Optional[str] = None


class UploadResponse(CamelModel):
    success: bool
    file_id: str
    record_id: str
    web_view_link: Optional[str] = None
    direct_download_link: Optional[str] = None


class DeleteRequest(CamelModel):
    file_id: str = ""
    drive_file_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.services = build_services()

    if not (settings.google_client_id or settings.google_client_secret_json):
        logger.warning(
            "Google OAuth client not configured. Set GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET "
            "or GOOGLE_CLIENT_SECRET_JSON, with redirect URI "
            f"{settings.google_redirect_uri}"
        )
    if not settings.store_path:
        logger.warning("STORE_PATH not set: Drive links and file records live in memory only")

    logger.info("Application started")
    yield
    logger.info("Application shut down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title=settings.app_title,
    version=settings.app_version,
    lifespan=lifespan,
)


@app.exception_handler(DriveLinkError)
async def drive_link_error_handler(request: Request, exc: DriveLinkError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    error = InvalidArgument(f"Invalid request field '{field}': {first.get('msg', 'invalid')}")
    return JSONResponse(status_code=error.status_code, content={"error": error.to_dict()})


@app.get("/", response_model=HealthResponse)
async def health_check():
    return HealthResponse(status="ok", version=settings.app_version)


# ---------------------------------------------------------------------------
# Drive linking
# ---------------------------------------------------------------------------
@app.post("/v1/drive/auth-url", response_model=AuthUrlResponse)
async def create_authorization_url(
    uid: str = Depends(get_caller_uid),
    services: Services = Depends(get_services),
):
    url = await asyncio.to_thread(services.broker.create_authorization_url, uid)
    return AuthUrlResponse(url=url)


@app.post("/v1/drive/link", response_model=ResultResponse)
async def exchange_code(
    request: ExchangeCodeRequest,
    uid: str = Depends(get_caller_uid),
    services: Services = Depends(get_services),
):
    result = await asyncio.to_thread(services.broker.exchange_code, uid, request.code)
    return ResultResponse(**result)


@app.post("/v1/drive/disconnect", response_model=ResultResponse)
async def disconnect(
    uid: str = Depends(get_caller_uid),
    services: Services = Depends(get_services),
):
    result = await asyncio.to_thread(services.broker.disconnect, uid)
    return ResultResponse(**result)


@app.get("/v1/drive/status", response_model=LinkStatusResponse)
async def link_status(
    uid: str = Depends(get_caller_uid),
    services: Services = Depends(get_services),
):
    status = await asyncio.to_thread(services.broker.link_status, uid)
    return LinkStatusResponse(**status)


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------
@app.post("/v1/files/upload", response_model=UploadResponse)
async def upload_file(
    request: UploadRequest,
    uid: str = Depends(get_caller_uid),
    services: Services = Depends(get_services),
):
    result = await asyncio.to_thread(
        services.files.upload,
        uid,
        request.file_content,
        request.file_name,
        request.file_type,
        request.title,
        request.description,
        request.subject,
        request.folder_name,
    )
    return UploadResponse(**result)


@app.post("/v1/files/delete", response_model=ResultResponse)
async def delete_file(
    request: DeleteRequest,
    uid: str = Depends(get_caller_uid),
    services: Services = Depends(get_services),
):
    result = await asyncio.to_thread(
        services.files.delete, uid, request.file_id, request.drive_file_id
    )
    return ResultResponse(**result)


# ---------------------------------------------------------------------------
# OAuth redirect target (opened inside the popup)
# ---------------------------------------------------------------------------
def _script_json(value) -> str:
    return json.dumps(value).replace("<", "\\u003c").replace(">", "\\u003e")


@app.get("/auth/drive/callback", response_class=HTMLResponse)
async def auth_drive_callback(
    code: str = Query(None),
    state: str = Query(None),
    error: str = Query(None),
):
    """Google redirects the popup here. Hands code + state to the opener window, then closes."""
    payload = {"type": AUTH_CODE_MESSAGE_TYPE, "state": state or ""}
    if error:
        payload["error"] = error
        heading = "Authorization Failed"
        text = f"Google returned an error: {html.escape(error)}"
    elif code:
        payload["code"] = code
        heading = "Google Drive Authorized"
        text = "You can close this window."
    else:
        return HTMLResponse(
            "<html><body style='font-family:sans-serif;text-align:center;padding:60px'>"
            "<h1>Authorization Failed</h1>"
            "<p>Missing authorization code.</p>"
            "</body></html>",
            status_code=400,
        )

    return HTMLResponse(
        "<html><body style='font-family:sans-serif;text-align:center;padding:60px'>"
        f"<h1>{heading}</h1>"
        f"<p>{text}</p>"
        "<script>"
        "if (window.opener) {"
        f"  window.opener.postMessage({_script_json(payload)}, {_script_json(settings.frontend_origin)});"
        "  window.close();"
        "}"
        "</script>"
        "</body></html>",
        status_code=400 if error else 200,
    )
