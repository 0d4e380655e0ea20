from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .constants import (
    DELIMITER,
    FILE_LIST_REQUEST,
    PEER_DIRECTION,
    PEER_SUPPORTS,
    PROTOCOL_BYTES_ENCODING,
)
from .errors import ProtocolError, TransportError
from .events import HubEvent
from .framing import FrameAssembler
from .lock import derive_key, lock_challenge
from .transport import Address, StreamListener, StreamTransport

if TYPE_CHECKING:
    from .session import HubSession


class PeerRole(str, Enum):
    LISTENER = "listener"
    CONNECTOR = "connector"


class HandshakeStage(str, Enum):
    AWAIT_NICK = "await_nick"
    AWAIT_LOCK = "await_lock"
    AWAIT_KEY = "await_key"
    READY = "ready"


@dataclass(eq=False)
class PeerSession:
    role: PeerRole
    remote_address: Address | None = None
    stage: HandshakeStage = HandshakeStage.AWAIT_NICK
    receive_buffer: bytearray = field(default_factory=bytearray)
    remote_nick: str | None = None


Sink = Callable[[PeerSession, bytes], None]


def _require_nick(nick: str) -> None:
    if not nick or not nick.strip():
        raise ValueError("a remote nick is required")


class PeerHandshake:
    """
    The $MyNick/$Lock/$Key exchange run on every peer connection.

    Both roles use this one routine; they differ only in whether we speak
    first (connector) or wait for the remote ``$MyNick`` (listener). Once
    the remote ``$Key`` arrives we request the file list and every further
    byte is payload.
    """

    def __init__(
        self,
        session: PeerSession,
        *,
        local_nick: str,
        speaks_first: bool,
        send: Callable[[bytes], None],
        encoding: str = "utf-8",
        on_ready: Callable[[PeerSession], None] | None = None,
    ) -> None:
        self.session = session
        self.local_nick = local_nick
        self.speaks_first = bool(speaks_first)
        self.encoding = encoding
        self.log = logging.getLogger("nmdcc.peer")
        self._send = send
        self._on_ready = on_ready
        # Peer traffic is framed byte-for-byte; latin-1 keeps lock bytes intact.
        self._assembler = FrameAssembler()

    @property
    def ready(self) -> bool:
        return self.session.stage is HandshakeStage.READY

    def start(self) -> None:
        if self.speaks_first:
            self._send_my_nick()
            self.session.stage = HandshakeStage.AWAIT_LOCK
        else:
            self.session.stage = HandshakeStage.AWAIT_NICK

    def feed(self, data: bytes) -> bytes:
        """Consume received bytes; return whatever arrived after the handshake."""
        if self.ready:
            return bytes(data)

        commands = self._assembler.feed(data.decode(PROTOCOL_BYTES_ENCODING))
        for i, command in enumerate(commands):
            self._handle(command)
            if self.ready:
                rest = DELIMITER.join(commands[i + 1 :] + [self._assembler.partial])
                self._assembler.reset()
                return rest.encode(PROTOCOL_BYTES_ENCODING)
        return b""

    def _send_my_nick(self) -> None:
        self._send(f"$MyNick {self.local_nick}|".encode(self.encoding, errors="replace"))

    def _handle(self, command: str) -> None:
        if not command:
            return

        cmd, _, rem = command.partition(" ")
        stage = self.session.stage

        if cmd == "$MyNick":
            self.session.remote_nick = rem.encode(PROTOCOL_BYTES_ENCODING).decode(
                self.encoding, errors="replace"
            )
            if stage is HandshakeStage.AWAIT_NICK:
                self._send_my_nick()
                self.session.stage = HandshakeStage.AWAIT_LOCK

        elif cmd == "$Lock":
            if stage is not HandshakeStage.AWAIT_LOCK:
                self.log.debug("Ignoring $Lock in stage %s", stage.value)
                return
            challenge = lock_challenge(rem)
            try:
                key = derive_key(challenge)
            except ValueError as e:
                raise ProtocolError(f"bad peer lock: {e}") from e
            reply = f"$Lock {rem}|{PEER_SUPPORTS}|{PEER_DIRECTION}|$Key {key}|"
            self._send(reply.encode(PROTOCOL_BYTES_ENCODING))
            self.session.stage = HandshakeStage.AWAIT_KEY

        elif cmd == "$Key":
            if stage is not HandshakeStage.AWAIT_KEY:
                self.log.debug("Ignoring $Key in stage %s", stage.value)
                return
            self._send(f"{FILE_LIST_REQUEST}|".encode(PROTOCOL_BYTES_ENCODING))
            self.session.stage = HandshakeStage.READY
            if self._on_ready is not None:
                self._on_ready(self.session)

        elif cmd in ("$Supports", "$Direction"):
            self.log.debug("Peer %s %s", cmd, rem)

        else:
            self.log.debug("Unhandled peer command %r", cmd)


class PeerConnection:
    """One peer socket: its transport, handshake and received bytes."""

    def __init__(
        self,
        negotiator: PeerTransferNegotiator,
        role: PeerRole,
        remote_address: Address | None,
    ) -> None:
        self.negotiator = negotiator
        self.log = logging.getLogger("nmdcc.peer")
        self.session = PeerSession(role=role, remote_address=remote_address)
        hub = negotiator.hub
        self.handshake = PeerHandshake(
            self.session,
            local_nick=hub.state.own_nick,
            speaks_first=role is PeerRole.CONNECTOR,
            send=self._write,
            encoding=hub.config.encoding,
            on_ready=negotiator._handshake_ready,
        )
        self.transport: Any = None

    def attach(self, transport: Any) -> None:
        self.transport = transport
        self.handshake.start()
        transport.start()

    def _write(self, data: bytes) -> None:
        self.transport.write(data)

    def on_data(self, data: bytes) -> None:
        try:
            payload = self.handshake.feed(data)
        except (ProtocolError, TransportError) as e:
            self.log.warning(
                "Peer handshake failed peer=%s err=%s", self.session.remote_address, e
            )
            self.close()
            return
        if payload:
            self.session.receive_buffer.extend(payload)
            self.negotiator._deliver(self.session, payload)

    def on_close(self, error: BaseException | None) -> None:
        if error is not None:
            self.log.info(
                "Peer connection failed peer=%s err=%s", self.session.remote_address, error
            )
        self.negotiator._forget(self)

    def close(self) -> None:
        if self.transport is not None:
            self.transport.destroy()
        self.negotiator._forget(self)


class PeerTransferNegotiator:
    """
    Sets up direct peer connections to pull a user's compressed file list.

    Listener role: ``request_active_transfer`` opens one listening socket and
    asks (via the hub) for the remote to dial in. Connector role: a hub
    ``$ConnectToMe`` addressed to us makes us dial out. Received payload is
    handed raw to ``sink``; it is neither parsed nor decompressed here.
    """

    def __init__(
        self,
        hub: HubSession,
        *,
        sink: Sink | None = None,
        on_ready: Callable[[PeerSession], None] | None = None,
        on_closed: Callable[[PeerSession], None] | None = None,
        transport_factory: Callable[..., Any] | None = None,
        adopt_factory: Callable[..., Any] | None = None,
        listener_factory: Callable[..., Any] | None = None,
    ) -> None:
        self.hub = hub
        self.log = logging.getLogger("nmdcc.peer")
        self._sink = sink
        self._on_ready = on_ready
        self._on_closed = on_closed
        self._transport_factory = transport_factory or StreamTransport.dial
        self._adopt_factory = adopt_factory or StreamTransport.adopt
        self._listener_factory = listener_factory or StreamListener

        self._lock = threading.Lock()
        self._connections: dict[int, PeerConnection] = {}
        self._listener: Any = None

        self._unsubscribe = hub.events.subscribe(
            HubEvent.CONNECT_TO_ME, self._on_connect_to_me
        )

    def connections(self) -> list[PeerSession]:
        with self._lock:
            return [c.session for c in self._connections.values()]

    # Listener role

    def start_listener(self) -> Address:
        cfg = self.hub.config
        with self._lock:
            if self._listener is None:
                self._listener = self._listener_factory(
                    cfg.listen_address, cfg.listen_port, on_accept=self._on_accept
                )
            listener = self._listener
        return listener.start()

    def advertised_address(self) -> Address:
        host, port = self.start_listener()
        if host in ("", "0.0.0.0"):
            local = self.hub.local_address
            if local is not None:
                host = local[0]
        return host, port

    def request_active_transfer(self, remote_nick: str | None = None) -> Address:
        host, port = self.advertised_address()
        # Without a target the request goes out under our own nick. Hubs
        # forward $ConnectToMe to the nick in its first field, so a named
        # target takes that place instead.
        nick = remote_nick or self.hub.state.own_nick
        self.hub.send_raw(f"$ConnectToMe {nick} {host}:{port}|")
        return host, port

    def request_passive_transfer(self, remote_nick: str) -> None:
        _require_nick(remote_nick)
        self.hub.send_raw(f"$RevConnectToMe {self.hub.state.own_nick} {remote_nick}|")

    def request_transfer(self, remote_nick: str) -> None:
        _require_nick(remote_nick)
        if self.hub.config.active_mode:
            self.request_active_transfer(remote_nick)
        else:
            self.request_passive_transfer(remote_nick)

    def _on_accept(self, sock: Any, addr: Address) -> None:
        conn = PeerConnection(self, PeerRole.LISTENER, addr)
        transport = self._adopt_factory(
            sock,
            on_data=conn.on_data,
            on_close=conn.on_close,
            name=f"peer-{addr[0]}:{addr[1]}",
        )
        self._track(conn)
        conn.attach(transport)

    # Connector role

    def connect_to_peer(self, host: str, port: int) -> PeerConnection:
        conn = PeerConnection(self, PeerRole.CONNECTOR, (host, int(port)))
        transport = self._transport_factory(
            host,
            int(port),
            on_data=conn.on_data,
            on_close=conn.on_close,
            connect_timeout=self.hub.config.connect_timeout_s,
            name=f"peer-{host}:{port}",
        )
        self._track(conn)
        conn.attach(transport)
        return conn

    def _on_connect_to_me(self, rem: str) -> None:
        nick, _, target = rem.partition(" ")
        if nick != self.hub.state.own_nick:
            self.log.debug("Ignoring $ConnectToMe for %r", nick)
            return
        host, _, port_text = target.strip().rpartition(":")
        try:
            port = int(port_text)
        except ValueError:
            self.log.warning("Bad $ConnectToMe address %r", target)
            return
        if not host:
            self.log.warning("Bad $ConnectToMe address %r", target)
            return
        self.log.info("Dialing peer %s:%s", host, port)
        self.connect_to_peer(host, port)

    # Shared

    def _track(self, conn: PeerConnection) -> None:
        with self._lock:
            self._connections[id(conn)] = conn
        self.hub.stats.inc("peer_connections")

    def _forget(self, conn: PeerConnection) -> None:
        with self._lock:
            removed = self._connections.pop(id(conn), None)
        if removed is None or self._on_closed is None:
            return
        try:
            self._on_closed(conn.session)
        except Exception:
            self.log.exception(
                "Peer close handler failed peer=%s", conn.session.remote_address
            )

    def _handshake_ready(self, session: PeerSession) -> None:
        self.log.info(
            "Peer handshake complete peer=%s nick=%s, file list requested",
            session.remote_address,
            session.remote_nick,
        )
        if self._on_ready is None:
            return
        try:
            self._on_ready(session)
        except Exception:
            self.log.exception("Peer ready handler failed peer=%s", session.remote_address)

    def _deliver(self, session: PeerSession, payload: bytes) -> None:
        self.hub.stats.inc("peer_bytes_in", len(payload))
        if self._sink is None:
            return
        try:
            self._sink(session, payload)
        except Exception:
            self.log.exception("Transfer sink failed peer=%s", session.remote_address)

    def close(self) -> None:
        self._unsubscribe()
        with self._lock:
            listener, self._listener = self._listener, None
            conns = list(self._connections.values())
        if listener is not None:
            listener.close()
        for conn in conns:
            conn.close()
