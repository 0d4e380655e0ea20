"""Socket transports: one reader thread per TCP stream, listener, or UDP socket."""

from __future__ import annotations

import logging
import socket
import ssl
import threading
from collections.abc import Callable

from .constants import KEEPALIVE_IDLE_S
from .errors import TransportError

Address = tuple[str, int]
DataCallback = Callable[[bytes], None]
CloseCallback = Callable[[BaseException | None], None]

# Listener and UDP loops wake this often to notice close().
_POLL_INTERVAL_S = 0.5


def _enable_keepalive(sock: socket.socket) -> None:
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    if hasattr(socket, "TCP_KEEPIDLE"):
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, KEEPALIVE_IDLE_S)
        except OSError:
            pass


def _sockname(sock: socket.socket | None, *, peer: bool = False) -> Address | None:
    if sock is None:
        return None
    try:
        addr = sock.getpeername() if peer else sock.getsockname()
    except OSError:
        return None
    return str(addr[0]), int(addr[1])


def _join_reader(thread: threading.Thread | None) -> None:
    # The port is only released once the reader has left its blocking call.
    if thread is None or thread is threading.current_thread():
        return
    thread.join(timeout=_POLL_INTERVAL_S * 4)


class StreamTransport:
    """
    A TCP (optionally TLS) byte stream serviced by a daemon reader thread.

    Dialing happens on the reader thread, so ``start()`` never blocks on the
    network; writes issued before the connection is up are queued and
    flushed in order once it is. Received chunks go to ``on_data`` in
    arrival order. ``on_close`` fires once, with the error (or None on EOF),
    unless the transport was destroyed locally first.
    """

    def __init__(
        self,
        *,
        name: str,
        on_data: DataCallback,
        on_close: CloseCallback,
        on_open: Callable[[], None] | None = None,
        sock: socket.socket | None = None,
        address: Address | None = None,
        use_tls: bool = False,
        tls_verify: bool = False,
        connect_timeout: float = 30.0,
        recv_size: int = 65536,
    ) -> None:
        if sock is None and address is None:
            raise ValueError("either sock or address is required")
        self.name = name
        self.log = logging.getLogger("nmdcc.transport")
        self.use_tls = bool(use_tls)
        self.tls_verify = bool(tls_verify)
        self.connect_timeout = float(connect_timeout)
        self.recv_size = int(recv_size)

        self._on_data = on_data
        self._on_close = on_close
        self._on_open = on_open
        self._address = address

        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._sock = sock
        self._pending: list[bytes] = []
        self._destroyed = False
        self._thread: threading.Thread | None = None

    @classmethod
    def dial(
        cls,
        host: str,
        port: int,
        *,
        on_data: DataCallback,
        on_close: CloseCallback,
        on_open: Callable[[], None] | None = None,
        use_tls: bool = False,
        tls_verify: bool = False,
        connect_timeout: float = 30.0,
        name: str | None = None,
    ) -> StreamTransport:
        return cls(
            name=name or f"{host}:{port}",
            address=(str(host), int(port)),
            on_data=on_data,
            on_close=on_close,
            on_open=on_open,
            use_tls=use_tls,
            tls_verify=tls_verify,
            connect_timeout=connect_timeout,
        )

    @classmethod
    def adopt(
        cls,
        sock: socket.socket,
        *,
        on_data: DataCallback,
        on_close: CloseCallback,
        name: str | None = None,
    ) -> StreamTransport:
        """Wrap an already connected socket (e.g. one returned by accept())."""
        sock.settimeout(None)
        _enable_keepalive(sock)
        return cls(
            name=name or "adopted",
            sock=sock,
            on_data=on_data,
            on_close=on_close,
        )

    @property
    def local_address(self) -> Address | None:
        with self._lock:
            return _sockname(self._sock)

    @property
    def remote_address(self) -> Address | None:
        with self._lock:
            sock = self._sock
        return _sockname(sock, peer=True) or self._address

    @property
    def destroyed(self) -> bool:
        with self._lock:
            return self._destroyed

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name=f"nmdcc-{self.name}", daemon=True
        )
        self._thread.start()

    def write(self, data: bytes) -> None:
        with self._write_lock:
            with self._lock:
                if self._destroyed:
                    raise TransportError(f"{self.name}: transport closed")
                sock = self._sock
                if sock is None:
                    self._pending.append(bytes(data))
                    return
            try:
                sock.sendall(data)
            except OSError as e:
                raise TransportError(f"{self.name}: {e}") from e

    def destroy(self) -> None:
        with self._lock:
            if self._destroyed:
                return
            self._destroyed = True
            sock = self._sock
            self._pending.clear()
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()
        self.log.debug("Transport destroyed name=%s", self.name)

    def _open(self) -> socket.socket:
        assert self._address is not None
        host, port = self._address
        sock = socket.create_connection((host, port), timeout=self.connect_timeout)
        sock.settimeout(None)
        _enable_keepalive(sock)
        if self.use_tls:
            ctx = ssl.create_default_context()
            if not self.tls_verify:
                ctx.check_hostname = False
                ctx.verify_mode = ssl.CERT_NONE
            sock = ctx.wrap_socket(sock, server_hostname=host)
        return sock

    def _attach(self, sock: socket.socket) -> bool:
        with self._write_lock:
            with self._lock:
                if self._destroyed:
                    sock.close()
                    return False
                self._sock = sock
                pending, self._pending = self._pending, []
            for chunk in pending:
                sock.sendall(chunk)
        return True

    def _run(self) -> None:
        error: BaseException | None = None
        try:
            if self._sock is None:
                if not self._attach(self._open()):
                    return
                self.log.debug("Transport connected name=%s", self.name)
                if self._on_open is not None:
                    self._on_open()

            sock = self._sock
            assert sock is not None
            while True:
                data = sock.recv(self.recv_size)
                if not data:
                    break
                self._on_data(data)
        except OSError as e:
            error = e
        finally:
            with self._lock:
                sock = self._sock
                notify = not self._destroyed
                self._destroyed = True
            if sock is not None:
                sock.close()
            if notify:
                if error is not None:
                    self.log.debug("Transport failed name=%s err=%s", self.name, error)
                self._on_close(error)


class StreamListener:
    """Accepts inbound TCP connections on a fixed local address."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        on_accept: Callable[[socket.socket, Address], None],
        backlog: int = 8,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.backlog = int(backlog)
        self.log = logging.getLogger("nmdcc.transport")
        self._on_accept = on_accept
        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._closed = threading.Event()

    @property
    def address(self) -> Address | None:
        return _sockname(self._sock)

    def start(self) -> Address:
        if self._sock is not None:
            addr = self.address
            assert addr is not None
            return addr
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
            sock.listen(self.backlog)
            sock.settimeout(_POLL_INTERVAL_S)
        except OSError as e:
            sock.close()
            raise TransportError(f"cannot listen on {self.host}:{self.port}: {e}") from e
        self._sock = sock
        self._closed = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(sock,), name="nmdcc-peer-listener", daemon=True
        )
        self._thread.start()
        addr = self.address
        assert addr is not None
        self.log.info("Listening for peers on %s:%s", addr[0], addr[1])
        return addr

    def _run(self, sock: socket.socket) -> None:
        while not self._closed.is_set():
            try:
                conn, addr = sock.accept()
            except TimeoutError:
                continue
            except OSError:
                break
            try:
                self._on_accept(conn, (str(addr[0]), int(addr[1])))
            except Exception:
                self.log.exception("Accept handler failed peer=%s", addr)
                conn.close()
        sock.close()

    def close(self) -> None:
        self._closed.set()
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            # Wakes a pending accept() on Linux.
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()
        _join_reader(self._thread)


class DatagramSocket:
    """A bound UDP socket whose datagrams are delivered from a reader thread."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        on_datagram: Callable[[bytes, Address], None],
        recv_size: int = 65535,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.recv_size = int(recv_size)
        self.log = logging.getLogger("nmdcc.transport")
        self._on_datagram = on_datagram
        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._closed = threading.Event()

    @property
    def address(self) -> Address | None:
        return _sockname(self._sock)

    def start(self) -> Address:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((self.host, self.port))
            sock.settimeout(_POLL_INTERVAL_S)
        except OSError as e:
            sock.close()
            raise TransportError(f"cannot bind UDP {self.host}:{self.port}: {e}") from e
        self._sock = sock
        self._closed = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(sock,), name="nmdcc-search-udp", daemon=True
        )
        self._thread.start()
        addr = self.address
        assert addr is not None
        return addr

    def _run(self, sock: socket.socket) -> None:
        while not self._closed.is_set():
            try:
                data, addr = sock.recvfrom(self.recv_size)
            except TimeoutError:
                continue
            except OSError:
                break
            if self._closed.is_set():
                break
            try:
                self._on_datagram(data, (str(addr[0]), int(addr[1])))
            except Exception:
                self.log.exception("Datagram handler failed peer=%s", addr)
        sock.close()

    def close(self) -> None:
        self._closed.set()
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Unconnected UDP reports ENOTCONN but still wakes the reader.
            pass
        sock.close()
        _join_reader(self._thread)
