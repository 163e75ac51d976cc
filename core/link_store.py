import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from core.store import DELETE_FIELD, DocumentStore

logger = logging.getLogger(__name__)

# Private: only the server reads refresh tokens
TOKENS_COLLECTION = "drive_tokens"
# Public: the frontend may read the linked flag
USERS_COLLECTION = "users"


@dataclass
class LinkState:
    uid: str
    refresh_token: str | None = None
    linked: bool = False
    last_linked_at: str | None = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TokenStore:
    """Per-user Drive link state, split over a private token doc and a public flag doc."""

    def __init__(self, store: DocumentStore):
        self._store = store

    def get(self, uid: str) -> LinkState | None:
        token_doc = self._store.get(TOKENS_COLLECTION, uid)
        user_doc = self._store.get(USERS_COLLECTION, uid)
        if token_doc is None and user_doc is None:
            return None

        refresh_token = (token_doc or {}).get("refresh_token") or None
        last_linked_at = (token_doc or {}).get("last_linked_at") or (user_doc or {}).get(
            "drive_last_linked_at"
        )
        return LinkState(
            uid=uid,
            refresh_token=refresh_token,
            linked=refresh_token is not None,
            last_linked_at=last_linked_at,
        )

    def save_refresh_token(self, uid: str, refresh_token: str) -> LinkState:
        if not refresh_token:
            raise ValueError("refresh_token must be non-empty")

        linked_at = _now()
        with self._store.transaction() as batch:
            batch.set(
                TOKENS_COLLECTION, uid,
                {"refresh_token": refresh_token, "last_linked_at": linked_at},
                merge=True,
            )
            batch.set(
                USERS_COLLECTION, uid,
                {"drive_linked": True, "drive_last_linked_at": linked_at},
                merge=True,
            )

        logger.info(f"[{uid}] Drive link stored")
        return LinkState(uid=uid, refresh_token=refresh_token, linked=True, last_linked_at=linked_at)

    def clear(self, uid: str) -> None:
        """Drop the refresh token and mark unlinked. Records are kept, never deleted."""
        with self._store.transaction() as batch:
            batch.set(TOKENS_COLLECTION, uid, {"refresh_token": DELETE_FIELD}, merge=True)
            batch.set(USERS_COLLECTION, uid, {"drive_linked": False}, merge=True)
        logger.info(f"[{uid}] Drive link cleared")
