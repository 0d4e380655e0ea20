from __future__ import annotations

import codecs
import errno
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .codec import escape
from .config import ClientConfig
from .constants import RECONNECT_INTERVAL_S
from .errors import ChatSendError, TransportError
from .events import EventHub, HubEvent
from .framing import FrameAssembler
from .router import HubCommandRouter
from .stats import StatsManager
from .transport import Address, StreamTransport
from .users import UserDirectory


class ConnectionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    HANDSHAKING = "handshaking"
    ESTABLISHED = "established"


@dataclass
class SessionState:
    own_nick: str
    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    hub_name: str = ""
    sent_handshake_hello: bool = False
    auto_reconnect: bool = False


TransportFactory = Callable[..., Any]


def _describe_error(error: BaseException) -> str:
    code = getattr(error, "errno", None)
    if isinstance(code, int) and code in errno.errorcode:
        return errno.errorcode[code]
    return str(error) or type(error).__name__


def _redact(text: str) -> str:
    if text.startswith("$MyPass "):
        return "$MyPass ***|"
    return text


class HubSession:
    """
    One client connection to an NMDC hub.

    Owns the SessionState and the UserDirectory. Transport callbacks, the
    reconnect timer and public API calls all serialise on ``_state_lock``,
    so only one transport is ever current and late events from a replaced
    transport are dropped.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport_factory: TransportFactory | None = None,
        events: EventHub | None = None,
        stats: StatsManager | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("nmdcc.session")

        # Re-entrant: dispatch may call connect()/disconnect() (redirects,
        # transport errors) while already holding it.
        self._state_lock = threading.RLock()

        self.events = events or EventHub()
        self.stats = stats or StatsManager()
        self.state = SessionState(
            own_nick=config.nick, auto_reconnect=bool(config.auto_reconnect)
        )
        self.users = UserDirectory(self.events)
        self.router = HubCommandRouter(self)

        # Redirects change the target without touching the frozen config.
        self.address = config.address
        self.port = int(config.port)

        self._transport_factory = transport_factory or StreamTransport.dial
        self._transport: Any = None
        self._assembler = FrameAssembler()
        self._decoder = self._new_decoder()

        self._reconnect_stop: threading.Event | None = None
        self._reconnect_thread: threading.Thread | None = None

    @property
    def phase(self) -> ConnectionPhase:
        return self.state.phase

    @property
    def hub_name(self) -> str:
        return self.state.hub_name

    @property
    def is_connected(self) -> bool:
        with self._state_lock:
            return self._transport is not None

    @property
    def is_established(self) -> bool:
        return self.state.phase is ConnectionPhase.ESTABLISHED

    @property
    def local_address(self) -> Address | None:
        with self._state_lock:
            transport = self._transport
        if transport is None:
            return None
        return transport.local_address

    def _new_decoder(self) -> codecs.IncrementalDecoder:
        return codecs.getincrementaldecoder(self.config.encoding)(errors="replace")

    def _set_phase(self, phase: ConnectionPhase) -> None:
        self.state.phase = phase
        self.events.emit(HubEvent.STATE_CHANGED, phase)

    # Lifecycle

    def start(self) -> None:
        if self.config.connect_immediately:
            self.connect()

    def connect(self) -> None:
        """Open a fresh hub transport, tearing down any existing one first."""
        with self._state_lock:
            if self._transport is not None:
                self.disconnect()

            self._assembler.reset()
            self._decoder = self._new_decoder()
            self.state.sent_handshake_hello = False
            self.users.clear()

            self.log.info(
                "Connecting to %s:%s tls=%s", self.address, self.port, self.config.use_tls
            )
            transport = self._transport_factory(
                self.address,
                self.port,
                use_tls=self.config.use_tls,
                tls_verify=self.config.tls_verify,
                connect_timeout=self.config.connect_timeout_s,
                name="hub",
                on_open=lambda: self._on_transport_open(transport),
                on_data=lambda data: self._on_transport_data(transport, data),
                on_close=lambda error: self._on_transport_close(transport, error),
            )
            self._transport = transport
            self.stats.inc("connects")

            self.set_auto_reconnect(self.state.auto_reconnect)
            self._set_phase(ConnectionPhase.HANDSHAKING)
            transport.start()

    def disconnect(self) -> None:
        with self._state_lock:
            transport, self._transport = self._transport, None
            if transport is not None:
                transport.destroy()
                self.stats.inc("disconnects")

            if self.state.phase is ConnectionPhase.ESTABLISHED:
                self.log.info("Disconnected from %s:%s", self.address, self.port)
                self.events.emit(HubEvent.CLOSED)
            elif transport is not None:
                self.events.emit(HubEvent.DEBUG, "Aborting incomplete connection")

            self._set_phase(ConnectionPhase.DISCONNECTED)

    def close(self) -> None:
        """Stop reconnecting and drop the hub connection."""
        with self._state_lock:
            self.set_auto_reconnect(False)
            self.disconnect()

    def redirect(self, address: str, port: int) -> None:
        with self._state_lock:
            self.log.info("Following redirect to %s:%s", address, port)
            self.address = address
            self.port = int(port)
            self.stats.inc("redirects")
            self.connect()

    def mark_established(self) -> None:
        """Enter ESTABLISHED and emit CONNECTED, at most once per transport."""
        with self._state_lock:
            if self.state.phase is ConnectionPhase.ESTABLISHED:
                return
            self._set_phase(ConnectionPhase.ESTABLISHED)
            self.log.info(
                "Logged in to %s:%s as %s", self.address, self.port, self.state.own_nick
            )
            self.events.emit(HubEvent.CONNECTED)

    def set_auto_reconnect(self, enabled: bool) -> None:
        with self._state_lock:
            self.state.auto_reconnect = bool(enabled)

            if enabled and self._reconnect_stop is None:
                stop = threading.Event()
                self._reconnect_stop = stop
                self._reconnect_thread = threading.Thread(
                    target=self._reconnect_loop,
                    args=(stop,),
                    name="nmdcc-reconnect",
                    daemon=True,
                )
                self._reconnect_thread.start()

            elif not enabled and self._reconnect_stop is not None:
                self._reconnect_stop.set()
                self._reconnect_stop = None
                self._reconnect_thread = None

    def _reconnect_loop(self, stop: threading.Event) -> None:
        interval = float(self.config.reconnect_interval_s)
        if interval <= 0:
            interval = RECONNECT_INTERVAL_S

        while not stop.wait(interval):
            with self._state_lock:
                if stop.is_set():
                    break
                if self.state.phase is ConnectionPhase.ESTABLISHED:
                    continue
                self.log.info("Reconnecting to %s:%s", self.address, self.port)
                self.events.emit(HubEvent.DEBUG, "Reconnecting...")
                try:
                    self.connect()
                except Exception:
                    self.log.exception("Reconnect failed")

    # Transport callbacks

    def _on_transport_open(self, transport: Any) -> None:
        with self._state_lock:
            if transport is not self._transport:
                return
            self.events.emit(HubEvent.SYSTEM_MESSAGE, "Connected to server.")

    def _on_transport_data(self, transport: Any, data: bytes) -> None:
        with self._state_lock:
            if transport is not self._transport:
                return
            self.stats.inc("bytes_in", len(data))
            for command in self._assembler.feed(self._decoder.decode(data)):
                # A redirect or disconnect replaces the transport mid-chunk.
                if transport is not self._transport:
                    break
                self.router.dispatch(command)

    def _on_transport_close(self, transport: Any, error: BaseException | None) -> None:
        with self._state_lock:
            if transport is not self._transport:
                return
            if error is None:
                self.events.emit(HubEvent.SYSTEM_MESSAGE, "Connection closed.")
            elif isinstance(error, TimeoutError):
                self.events.emit(HubEvent.SYSTEM_MESSAGE, "Connection timed out.")
            else:
                self.log.warning(
                    "Hub connection error %s:%s err=%s", self.address, self.port, error
                )
                self.events.emit(
                    HubEvent.SYSTEM_MESSAGE,
                    f"Connection error ({_describe_error(error)})",
                )
            self.disconnect()

    # Outbound

    def send_raw(self, text: str, *, encoding: str | None = None) -> None:
        """Write ``text`` as-is: no escaping, no trailing delimiter added."""
        data = text.encode(encoding or self.config.encoding, errors="replace")
        with self._state_lock:
            transport = self._transport
            if transport is None:
                raise TransportError("not connected to a hub")
            shown = _redact(text)
            self.log.debug("TX %s", shown)
            self.events.emit(HubEvent.DEBUG, f"SENDING: {shown}")
            transport.write(data)
            self.stats.inc("bytes_out", len(data))

    def say(self, message: str) -> None:
        """Post ``message`` to main chat."""
        self._send_chat(
            f"<{self.state.own_nick}> {escape(message)}|", "chat message"
        )

    def private_message(self, nick: str, message: str) -> None:
        own = self.state.own_nick
        self._send_chat(
            f"$To: {nick} From: {own} $<{own}> {escape(message)}|", "private message"
        )

    def _send_chat(self, line: str, what: str) -> None:
        try:
            self.send_raw(line)
        except TransportError as e:
            self.stats.inc("chat_failures")
            if not self.config.ignore_chat_failures:
                raise ChatSendError(f"{what} not sent: {e}") from e
            self.log.warning("Failed to send %s: %s", what, e)
            self.events.emit(HubEvent.DEBUG, f"Failed to send {what}.")
