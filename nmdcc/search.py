from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .events import HubEvent
from .transport import Address, DatagramSocket

if TYPE_CHECKING:
    from .session import HubSession

ResultCallback = Callable[[str, Address | None], None]


class SearchDispatcher:
    """
    Issues hub searches and surfaces raw results.

    Passive searches are answered through the hub as ``$SR`` lines; active
    searches are answered by UDP datagrams to the one socket this dispatcher
    keeps open. Results are passed on unparsed: ``on_result(text, origin)``
    with ``origin`` None for hub-relayed results. A datagram is delivered
    exactly as received (decoded, trailing ``|`` included); a hub-relayed
    result has already lost its delimiter to framing.
    """

    def __init__(
        self,
        hub: HubSession,
        *,
        on_result: ResultCallback | None = None,
        datagram_factory: Callable[..., Any] | None = None,
    ) -> None:
        self.hub = hub
        self.log = logging.getLogger("nmdcc.search")
        self._on_result = on_result
        self._datagram_factory = datagram_factory or DatagramSocket
        self._lock = threading.Lock()
        self._socket: Any = None
        self._timer: threading.Timer | None = None
        self._unsubscribe = hub.events.subscribe(
            HubEvent.SEARCH_RESULT, self._on_hub_result
        )

    @property
    def active(self) -> bool:
        with self._lock:
            return self._socket is not None

    def search_passive(self, query: str) -> None:
        self.hub.send_raw(f"$Search Hub:{self.hub.state.own_nick} {query}|")
        self.hub.stats.inc("searches")

    def search_active(self, query: str) -> Address:
        """Open the UDP result socket and send the search; returns the advertised address."""
        self.close_active()

        cfg = self.hub.config
        sock = self._datagram_factory(
            cfg.search_address, cfg.search_port, on_datagram=self._on_datagram
        )
        host, port = sock.start()
        if host in ("", "0.0.0.0"):
            local = self.hub.local_address
            if local is not None:
                host = local[0]

        with self._lock:
            self._socket = sock
            if cfg.active_search_timeout_s and cfg.active_search_timeout_s > 0:
                self._timer = threading.Timer(
                    float(cfg.active_search_timeout_s), self._expire, args=(sock,)
                )
                self._timer.daemon = True
                self._timer.start()

        self.log.info("Active search on %s:%s query=%r", host, port, query)
        try:
            self.hub.send_raw(f"$Search {host}:{port} {query}|")
        except Exception:
            self.close_active()
            raise
        self.hub.stats.inc("searches")
        return host, port

    def close_active(self) -> None:
        with self._lock:
            sock, self._socket = self._socket, None
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        if sock is not None:
            sock.close()

    def close(self) -> None:
        self._unsubscribe()
        self.close_active()

    def _expire(self, sock: Any) -> None:
        with self._lock:
            if self._socket is not sock:
                return
        self.log.debug("Active search timed out")
        self.close_active()

    def _on_datagram(self, data: bytes, addr: Address) -> None:
        self.hub.stats.inc("search_datagrams")
        text = data.decode(self.hub.config.encoding, errors="replace")
        self._deliver(text, addr)

    def _on_hub_result(self, rem: str) -> None:
        self._deliver(f"$SR {rem}", None)

    def _deliver(self, text: str, origin: Address | None) -> None:
        if self._on_result is None:
            return
        try:
            self._on_result(text, origin)
        except Exception:
            self.log.exception("Search result handler failed origin=%s", origin)
