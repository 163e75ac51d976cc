import json
from dataclasses import dataclass, field

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Google OAuth2 (web application client) ---
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:3000/auth/drive/callback"  # served on frontend_origin
    google_client_secret_json: str = ""  # optional, overrides id/secret above
    google_drive_scopes: list[str] = [
        "https://www.googleapis.com/auth/drive.file",
        "https://www.googleapis.com/auth/userinfo.email",
    ]

    # --- Google Drive ---
    drive_folder_name: str = "Schoolmaps Uploads"
    drive_timeout: float = 30.0
    upload_timeout: float = 300.0
    max_upload_size_mb: int = 25
    rollback_orphaned_uploads: bool = True

    # --- Caller identity ---
    jwt_secret: str = "changeme-dev-secret"
    jwt_algorithm: str = "HS256"

    # --- Frontend ---
    frontend_origin: str = "http://localhost:3000"

    # --- Storage ---
    store_path: str = ""  # empty = in-memory only

    # --- App ---
    app_title: str = "Drive Link API"
    app_version: str = "1.0.0"
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"


settings = Settings()


GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"


@dataclass(frozen=True)
class OAuthClientConfig:
    """OAuth client credentials, built once and handed to the components that need them."""

    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: tuple[str, ...] = field(default_factory=tuple)
    auth_uri: str = GOOGLE_AUTH_URI
    token_uri: str = GOOGLE_TOKEN_URI

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def to_client_config(self) -> dict:
        """Shape expected by google_auth_oauthlib Flow.from_client_config."""
        return {
            "web": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": self.auth_uri,
                "token_uri": self.token_uri,
                "redirect_uris": [self.redirect_uri],
            }
        }

    @classmethod
    def from_settings(cls, s: Settings) -> "OAuthClientConfig":
        client_id = s.google_client_id
        client_secret = s.google_client_secret
        auth_uri = GOOGLE_AUTH_URI
        token_uri = GOOGLE_TOKEN_URI

        if s.google_client_secret_json:
            with open(s.google_client_secret_json) as f:
                data = json.load(f)
            section = data.get("web") or data.get("installed")
            if not section:
                raise ValueError(
                    f"Invalid client secret file {s.google_client_secret_json}: "
                    "expected 'web' or 'installed' key"
                )
            client_id = section["client_id"]
            client_secret = section["client_secret"]
            auth_uri = section.get("auth_uri", GOOGLE_AUTH_URI)
            token_uri = section.get("token_uri", GOOGLE_TOKEN_URI)

        return cls(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=s.google_redirect_uri,
            scopes=tuple(s.google_drive_scopes),
            auth_uri=auth_uri,
            token_uri=token_uri,
        )
