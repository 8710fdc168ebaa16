"""Streaming session manager for the Kiwoom real-time WebSocket.

Owns one long-lived connection: opens the transport, logs in with the REST
access token, registers instruments for real-time prints, answers server
PINGs, and fans decoded ticks out to subscribers.

State machine (see ``autotrader.stream.models.TRANSITIONS``)::

    Disconnected → Connecting → Connected → LoggedIn → Subscribed
         ↑                         │            │           │
         └──────── transport lost ─┴────────────┴───────────┘
    any → Closing → Disconnected      (explicit disconnect)

Losing an established (logged-in) session starts a bounded reconnect loop
held by the session itself: a fixed number of attempts with a fixed delay,
reusing the stored credentials.  When the budget runs out the session stays
Disconnected and reports ``session_lost`` until the next explicit connect.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import websockets

from autotrader.broker.kiwoom_client import normalize_code
from autotrader.stream.codec import (
    TRNM_LOGIN,
    TRNM_PING,
    TRNM_REAL,
    TRNM_REG,
    TYPE_TRADE,
    decode_frame,
    decode_ticks,
    encode,
    login_frame,
    registration_frame,
    return_code,
)
from autotrader.stream.models import (
    AUTHENTICATED_STATES,
    OPEN_STATES,
    TRANSITIONS,
    SessionState,
)
from autotrader.stream.subscribers import SubscriberRegistry, Subscription

logger = logging.getLogger("autotrader.stream")

DEFAULT_RECONNECT_ATTEMPTS = 5
DEFAULT_RECONNECT_DELAY = 3.0
DEFAULT_LOGIN_TIMEOUT = 10.0


class StreamError(Exception):
    """The streaming transport could not be opened or was lost."""


class LoginError(StreamError):
    """The server rejected the login frame."""


class InvalidTransition(StreamError):
    """A state change outside the session's transition table."""


async def open_websocket(url: str):
    """Default connector: a ``websockets`` client connection.

    Library-level keepalive pings are disabled; the server drives liveness
    with its own PING frames.
    """
    return await websockets.connect(url, ping_interval=None, close_timeout=5)


class StreamingSession:
    """One authenticated real-time connection.

    Args:
        connector: ``async (url) -> channel``.  The channel must support
            ``await send(str)``, ``await close()`` and ``async for`` over
            inbound messages.  Defaults to :func:`open_websocket`.
        max_reconnect_attempts: Reconnect budget after an unplanned loss.
        reconnect_delay: Seconds to wait before each reconnect attempt.
        login_timeout: Seconds to wait for the LOGIN acknowledgement.
        sleep: Coroutine used for the reconnect delay (injectable for tests).
        token_provider: Optional coroutine returning a current access token.
            Each reconnect attempt logs in with a fresh token when it is set.
    """

    def __init__(
        self,
        connector: Optional[Callable[[str], Awaitable]] = None,
        max_reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        login_timeout: float = DEFAULT_LOGIN_TIMEOUT,
        sleep: Optional[Callable[[float], Awaitable]] = None,
        token_provider: Optional[Callable[[], Awaitable[str]]] = None,
    ) -> None:
        self._connector = connector or open_websocket
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._login_timeout = login_timeout
        self._sleep = sleep or asyncio.sleep
        self._token_provider = token_provider

        self._state = SessionState.DISCONNECTED
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._login_waiter: Optional[asyncio.Future] = None
        self._connect_lock = asyncio.Lock()

        self._credentials: Optional[tuple[str, str]] = None
        self._registered: dict[str, None] = {}  # ordered set of codes
        self._reconnect_attempts = 0
        self._session_lost = False
        self._last_warning: Optional[str] = None
        self._subscribers = SubscriberRegistry()

    # ── State ────────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_logged_in(self) -> bool:
        return self._state in AUTHENTICATED_STATES

    @property
    def session_lost(self) -> bool:
        return self._session_lost

    @property
    def registered_codes(self) -> list[str]:
        return list(self._registered)

    def status(self) -> dict:
        """Snapshot for status displays."""
        return {
            "state": self._state.value,
            "logged_in": self.is_logged_in,
            "registered_codes": self.registered_codes,
            "reconnect_attempts": self._reconnect_attempts,
            "session_lost": self._session_lost,
            "last_warning": self._last_warning,
            "subscribers": len(self._subscribers),
        }

    def _transition(self, new: SessionState) -> None:
        old = self._state
        if new is old:
            return
        if new not in TRANSITIONS[old]:
            raise InvalidTransition(f"{old.value} → {new.value}")
        self._state = new
        logger.debug("Session %s → %s", old.value, new.value)

    # ── Subscribers ──────────────────────────────────────────────────────

    def on_tick(self, callback: Callable) -> Subscription:
        """Register *callback* for every decoded ``TickUpdate``."""
        return self._subscribers.subscribe(callback)

    # ── Connect / disconnect ─────────────────────────────────────────────

    async def connect(self, url: str, token: str) -> None:
        """Open the transport and log in.

        No-op when a transport is already open.  Raises ``LoginError`` when
        the server rejects the token and ``StreamError`` when the transport
        cannot be opened or the acknowledgement never arrives.
        """
        async with self._connect_lock:
            if self._state in OPEN_STATES:
                logger.info("Streaming session already connected.")
                return

            self._cancel_reconnect()
            self._credentials = (url, token)
            self._reconnect_attempts = 0
            self._session_lost = False

            await self._establish(url, token)
            if self._registered:
                await self._send_registration(list(self._registered))

    async def disconnect(self) -> None:
        """Close the session, dropping pending reconnects and registrations.

        Idempotent.
        """
        self._cancel_reconnect()
        self._registered.clear()

        waiter = self._login_waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(StreamError("Disconnected during login"))

        if self._state is SessionState.DISCONNECTED:
            return

        self._transition(SessionState.CLOSING)
        await self._drop_transport()
        self._transition(SessionState.DISCONNECTED)
        logger.info("Streaming session closed.")

    async def _establish(self, url: str, token: str) -> None:
        """Connecting → Connected → LoggedIn, or back to Disconnected."""
        self._transition(SessionState.CONNECTING)
        logger.info("Connecting to %s", url)
        try:
            ws = await self._connector(url)
        except Exception as exc:
            self._transition(SessionState.DISCONNECTED)
            raise StreamError(f"Could not open {url}: {exc}") from exc

        if self._state is not SessionState.CONNECTING:
            # disconnect() ran while the transport was opening
            await ws.close()
            raise StreamError("Connect aborted")

        self._ws = ws
        self._transition(SessionState.CONNECTED)
        self._login_waiter = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.create_task(self._read_loop(ws))

        try:
            await self._send(login_frame(token))
            ack = await asyncio.wait_for(self._login_waiter, self._login_timeout)
        except asyncio.TimeoutError:
            await self._abort_login()
            raise StreamError("Timed out waiting for login acknowledgement") from None
        except Exception:
            await self._abort_login()
            raise
        finally:
            self._login_waiter = None

        if return_code(ack) != 0:
            message = ack.get("return_msg") or "Login rejected"
            logger.error("Streaming login rejected: %s", message)
            await self._abort_login()
            raise LoginError(message)

        self._transition(SessionState.LOGGED_IN)
        logger.info("Streaming session logged in.")

    async def _abort_login(self) -> None:
        await self._drop_transport()
        if self._state is not SessionState.DISCONNECTED:
            self._transition(SessionState.DISCONNECTED)

    async def _drop_transport(self) -> None:
        """Close the transport and stop the reader without triggering reconnect."""
        ws, self._ws = self._ws, None
        reader, self._reader_task = self._reader_task, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("Error while closing transport: %s", exc)
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    # ── Registration ─────────────────────────────────────────────────────

    async def register(
        self,
        codes: list[str],
        types: tuple[str, ...] = (TYPE_TRADE,),
    ) -> bool:
        """Register *codes* for real-time prints.

        Returns ``False`` (and sends nothing) unless logged in.  Repeated
        calls add instruments while staying Subscribed.
        """
        normalized = [normalize_code(c) for c in codes]
        if not normalized:
            return False
        if not self.is_logged_in:
            logger.warning(
                "Not logged in — cannot register %d instrument(s).", len(normalized),
            )
            return False

        await self._send_registration(normalized, types)
        for code in normalized:
            self._registered[code] = None
        return True

    async def _send_registration(
        self,
        codes: list[str],
        types: tuple[str, ...] = (TYPE_TRADE,),
    ) -> None:
        await self._send(registration_frame(codes, types))
        self._transition(SessionState.SUBSCRIBED)
        logger.info("Registered %d instrument(s) for real-time prints.", len(codes))

    # ── Inbound frames ───────────────────────────────────────────────────

    async def _send(self, frame: dict) -> None:
        await self._send_raw(encode(frame))

    async def _send_raw(self, message) -> None:
        if self._ws is None:
            raise StreamError("Streaming transport is not open")
        await self._ws.send(message)

    async def _read_loop(self, ws) -> None:
        try:
            async for raw in ws:
                await self._handle_message(raw)
        except Exception as exc:
            logger.warning("Streaming transport error: %s", exc)
        self._on_transport_lost(ws)

    async def _handle_message(self, raw) -> None:
        frame = decode_frame(raw)
        if frame is None:
            logger.debug("Dropping malformed frame: %.200r", raw)
            return

        trnm = frame.get("trnm")

        if trnm == TRNM_PING:
            if self.is_logged_in:
                await self._send_raw(raw)
            return

        if trnm == TRNM_LOGIN:
            waiter = self._login_waiter
            if waiter is not None and not waiter.done():
                waiter.set_result(frame)
            return

        if trnm == TRNM_REAL:
            for tick in decode_ticks(frame):
                self._subscribers.publish(tick)
            return

        if trnm == TRNM_REG:
            code = return_code(frame)
            if code == 0:
                logger.info("Real-time registration acknowledged.")
            else:
                self._last_warning = frame.get("return_msg") or f"REG failed ({code})"
                logger.warning("Real-time registration failed: %s", self._last_warning)
            return

        logger.debug("Ignoring frame with trnm=%r", trnm)

    # ── Reconnect ────────────────────────────────────────────────────────

    def _on_transport_lost(self, ws) -> None:
        if ws is not self._ws:
            return  # closed on purpose

        self._ws = None
        self._reader_task = None

        waiter = self._login_waiter
        if waiter is not None and not waiter.done():
            # _establish() owns the state while login is pending
            waiter.set_exception(
                StreamError("Connection closed before login acknowledgement")
            )
            return

        was_authenticated = self.is_logged_in
        logger.warning("Streaming connection lost (state=%s).", self._state.value)
        self._transition(SessionState.DISCONNECTED)
        if was_authenticated:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._credentials is None:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect_loop(self) -> None:
        url, token = self._credentials  # type: ignore[misc]

        while self._reconnect_attempts < self._max_reconnect_attempts:
            self._reconnect_attempts += 1
            attempt = self._reconnect_attempts
            logger.info(
                "Reconnect attempt %d/%d in %.1fs",
                attempt, self._max_reconnect_attempts, self._reconnect_delay,
            )
            await self._sleep(self._reconnect_delay)

            async with self._connect_lock:
                if self._state in OPEN_STATES:
                    return
                try:
                    if self._token_provider is not None:
                        token = await self._token_provider()
                        self._credentials = (url, token)
                    await self._establish(url, token)
                    if self._registered:
                        await self._send_registration(list(self._registered))
                except Exception as exc:
                    logger.warning("Reconnect attempt %d failed: %s", attempt, exc)
                    continue

            if self._state in OPEN_STATES:
                self._reconnect_attempts = 0
                logger.info("Streaming session restored.")
                return

        self._session_lost = True
        logger.error(
            "Streaming session lost after %d reconnect attempts.",
            self._max_reconnect_attempts,
        )
