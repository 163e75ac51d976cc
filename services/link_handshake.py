"""
Popup-based Google Drive linking handshake (frontend side).

One LinkingHandshake instance drives one attempt:

  IDLE ──start()──▶ AWAITING_CALLBACK ──auth code msg──▶ EXCHANGING ──▶ LINKED
    │                    │       │                            │
    └─▶ ERROR ◀──────────┘       └──popup closed──▶ CANCELLED └──▶ ERROR
        (url failure, popup blocked, state mismatch, provider error)

Three event sources feed the machine: cross-window messages
(handle_message), the popup-closed poll (poll_popup / watch_popup) and broker
responses. close() ends an attempt from outside, and a cancelled exchange
ends in ERROR. Every terminal state tears down exactly once. Teardown removes
the message listener, stops the poll and closes the popup. A new attempt
needs a new instance.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

AUTH_CODE_MESSAGE_TYPE = "googleAuthCode"


class HandshakeState(str, Enum):
    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    LINKED = "linked"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATES = {HandshakeState.LINKED, HandshakeState.ERROR, HandshakeState.CANCELLED}

_TRANSITIONS = {
    HandshakeState.IDLE: {
        HandshakeState.AWAITING_CALLBACK,
        HandshakeState.ERROR,
        HandshakeState.CANCELLED,
    },
    HandshakeState.AWAITING_CALLBACK: {
        HandshakeState.EXCHANGING,
        HandshakeState.ERROR,
        HandshakeState.CANCELLED,
    },
    HandshakeState.EXCHANGING: {
        HandshakeState.LINKED,
        HandshakeState.ERROR,
        HandshakeState.CANCELLED,
    },
}


@dataclass
class MessageEvent:
    origin: str
    data: Any


class PopupWindow(Protocol):
    @property
    def closed(self) -> bool: ...

    def close(self) -> None: ...


MessageListener = Callable[[MessageEvent], Awaitable[None]]


class WindowHost(Protocol):
    """The page hosting the handshake: its origin, popups and message listeners."""

    origin: str

    def open_popup(self, url: str) -> PopupWindow | None: ...

    def add_message_listener(self, listener: MessageListener) -> None: ...

    def remove_message_listener(self, listener: MessageListener) -> None: ...


class LinkBroker(Protocol):
    async def create_authorization_url(self) -> str: ...

    async def exchange_code(self, code: str) -> dict: ...


class LinkingHandshake:
    def __init__(
        self,
        uid: str,
        broker: LinkBroker,
        host: WindowHost,
        poll_interval: float | None = 1.0,
        on_change: Callable[[HandshakeState, str], None] | None = None,
    ):
        self.uid = uid
        self.state = HandshakeState.IDLE
        self.message = ""
        self._broker = broker
        self._host = host
        self._poll_interval = poll_interval
        self._on_change = on_change
        self._popup: PopupWindow | None = None
        self._listening = False
        self._poll_task: asyncio.Task | None = None
        self._done = asyncio.Event()

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    # -----------------------------------------------------------------------
    # Transition function
    # -----------------------------------------------------------------------
    def _transition(self, new_state: HandshakeState, message: str) -> bool:
        if new_state not in _TRANSITIONS.get(self.state, set()):
            logger.debug(f"[{self.uid}] Ignoring transition {self.state.value} -> {new_state.value}")
            return False

        logger.info(f"[{self.uid}] Handshake {self.state.value} -> {new_state.value}: {message}")
        self.state = new_state
        self.message = message

        if new_state in TERMINAL_STATES:
            self._teardown()
            self._done.set()

        if self._on_change:
            self._on_change(new_state, message)
        return True

    def _teardown(self) -> None:
        if self._listening:
            self._listening = False
            self._host.remove_message_listener(self.handle_message)

        if self._poll_task is not None:
            if self._poll_task is not asyncio.current_task() and not self._poll_task.done():
                self._poll_task.cancel()
            self._poll_task = None

        popup, self._popup = self._popup, None
        if popup is not None and not popup.closed:
            popup.close()

    # -----------------------------------------------------------------------
    # Event sources
    # -----------------------------------------------------------------------
    async def start(self) -> HandshakeState:
        if self.state is not HandshakeState.IDLE:
            raise RuntimeError("Handshake already started; create a new one to retry")

        self.message = "Linking Google Drive..."
        try:
            auth_url = await self._broker.create_authorization_url()
        except Exception as e:
            logger.error(f"[{self.uid}] Could not get authorization URL: {e}")
            self._transition(HandshakeState.ERROR, f"Error: {e}")
            return self.state

        popup = self._host.open_popup(auth_url)
        if popup is None:
            self._transition(
                HandshakeState.ERROR,
                "Error: the authorization window was blocked. Allow popups and try again.",
            )
            return self.state

        self._popup = popup
        self._host.add_message_listener(self.handle_message)
        self._listening = True
        self._transition(HandshakeState.AWAITING_CALLBACK, "Waiting for Google authorization...")

        if self._poll_interval:
            self._poll_task = asyncio.create_task(self.watch_popup())
        return self.state

    async def handle_message(self, event: MessageEvent) -> None:
        if self.state is not HandshakeState.AWAITING_CALLBACK:
            return

        if event.origin != self._host.origin:
            logger.warning(f"[{self.uid}] Ignored message from unknown origin: {event.origin}")
            return

        data = event.data
        if not isinstance(data, dict) or data.get("type") != AUTH_CODE_MESSAGE_TYPE:
            return

        if data.get("state") != self.uid:
            logger.warning(
                f"[{self.uid}] State mismatch in Google auth callback. "
                "Possible security issue or stale window."
            )
            self._transition(HandshakeState.ERROR, "Error: security check failed. Please try again.")
            return

        if data.get("error"):
            self._transition(HandshakeState.ERROR, f"Error: authorization denied ({data['error']}).")
            return

        code = data.get("code")
        if not code:
            logger.warning(f"[{self.uid}] Auth callback message without a code")
            return

        self._transition(HandshakeState.EXCHANGING, "Authorization code received, saving tokens...")
        try:
            await self._broker.exchange_code(code)
        except asyncio.CancelledError:
            self._transition(HandshakeState.ERROR, "Error: linking was interrupted. Please try again.")
            raise
        except Exception as e:
            logger.error(f"[{self.uid}] Token exchange failed: {e}")
            self._transition(HandshakeState.ERROR, f"Error while linking: {e}")
            return

        self._transition(HandshakeState.LINKED, "Google Drive linked successfully!")

    def poll_popup(self) -> bool:
        """Cancel when the user closed the popup before authorizing. Returns True if it did."""
        if self.state is not HandshakeState.AWAITING_CALLBACK:
            return False
        if self._popup is None or not self._popup.closed:
            return False
        return self._transition(
            HandshakeState.CANCELLED,
            "Google Drive linking cancelled or window closed.",
        )

    async def watch_popup(self) -> None:
        while not self.finished:
            await asyncio.sleep(self._poll_interval)
            self.poll_popup()

    def close(self) -> None:
        """End the attempt from outside (e.g. the settings view unmounts). No-op once finished."""
        self._transition(HandshakeState.CANCELLED, "Google Drive linking cancelled.")

    async def wait(self) -> HandshakeState:
        await self._done.wait()
        return self.state
