"""
Google Drive account linking (OAuth2 web-server flow).

Flow:
  1. Frontend calls create_authorization_url → opens the URL in a popup
  2. User consents → Google redirects the popup to GOOGLE_REDIRECT_URI
     (/auth/drive/callback) with ?code=...&state=<uid>
  3. The callback page posts {type: "googleAuthCode", code, state} to the opener
  4. Frontend checks state and calls exchange_code → refresh token is stored

access_type=offline + prompt=consent make Google issue a refresh token on
every consent, including re-links of an already-authorized account.
"""

import logging
from typing import Callable

from google_auth_oauthlib.flow import Flow

from core.config import OAuthClientConfig
from core.errors import FailedPrecondition, Internal, InvalidArgument, Unauthenticated
from core.link_store import TokenStore

logger = logging.getLogger(__name__)


def _default_flow_factory(config: OAuthClientConfig) -> Flow:
    return Flow.from_client_config(
        config.to_client_config(),
        scopes=list(config.scopes),
        redirect_uri=config.redirect_uri,
        # URL creation and code exchange happen in separate requests
        autogenerate_code_verifier=False,
    )


class OAuthBroker:
    def __init__(
        self,
        config: OAuthClientConfig,
        tokens: TokenStore,
        flow_factory: Callable[[OAuthClientConfig], Flow] = _default_flow_factory,
    ):
        self._config = config
        self._tokens = tokens
        self._flow_factory = flow_factory

    def _flow(self) -> Flow:
        if not self._config.configured:
            raise Internal(
                "Google OAuth is not configured. "
                "Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET (or GOOGLE_CLIENT_SECRET_JSON)."
            )
        return self._flow_factory(self._config)

    def create_authorization_url(self, uid: str) -> str:
        """Generate the Google consent URL. `state` carries the uid back to the frontend."""
        if not uid:
            raise Unauthenticated("Authentication required to link Google Drive.")

        auth_url, _ = self._flow().authorization_url(
            access_type="offline",
            prompt="consent",
            include_granted_scopes="true",
            state=uid,
        )
        logger.info(f"[{uid}] Authorization URL generated")
        return auth_url

    def exchange_code(self, uid: str, code: str) -> dict:
        """Exchange the authorization code for tokens and store the refresh token."""
        if not uid:
            raise Unauthenticated("Authentication required.")
        if not code or not code.strip():
            raise InvalidArgument("Authorization code is required.")

        flow = self._flow()
        try:
            flow.fetch_token(code=code.strip())
        except Exception as e:
            logger.exception(f"[{uid}] OAuth code exchange failed")
            raise Internal("Failed to link Google Drive.", details=str(e)) from e

        refresh_token = flow.credentials.refresh_token
        if not refresh_token:
            logger.warning(f"[{uid}] Token response carried no refresh token")
            raise FailedPrecondition(
                "Google did not return a refresh token. "
                "Remove the app's access in your Google account settings and link again."
            )

        try:
            self._tokens.save_refresh_token(uid, refresh_token)
        except Exception as e:
            logger.exception(f"[{uid}] Failed to store Drive tokens")
            raise Internal("Failed to save Google Drive link.", details=str(e)) from e

        return {"success": True, "message": "Google Drive linked successfully."}

    def disconnect(self, uid: str) -> dict:
        if not uid:
            raise Unauthenticated("Authentication required.")

        state = self._tokens.get(uid)
        if state is None or not state.linked:
            logger.info(f"[{uid}] Disconnect requested but Drive was not linked")
            return {"success": True, "message": "Google Drive was not linked."}

        try:
            self._tokens.clear(uid)
        except Exception as e:
            logger.exception(f"[{uid}] Failed to clear Drive link")
            raise Internal("Failed to unlink Google Drive.", details=str(e)) from e

        return {"success": True, "message": "Google Drive unlinked."}

    def link_status(self, uid: str) -> dict:
        if not uid:
            raise Unauthenticated("Authentication required.")
        state = self._tokens.get(uid)
        if state is None:
            return {"linked": False, "last_linked_at": None}
        return {"linked": state.linked, "last_linked_at": state.last_linked_at}
