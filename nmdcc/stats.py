"""Counters for hub, peer and search traffic."""

from __future__ import annotations

import threading
import time


class StatsManager:
    """
    Thread-safe client counters.

    Incremented from the hub reader thread, each peer connection's reader
    thread, and the search socket thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started_monotonic = time.monotonic()
        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "commands_in": 0,
            "commands_unhandled": 0,
            "commands_malformed": 0,
            "connects": 0,
            "disconnects": 0,
            "redirects": 0,
            "chat_failures": 0,
            "peer_connections": 0,
            "peer_bytes_in": 0,
            "searches": 0,
            "search_datagrams": 0,
        }

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self) -> str:
        """Format current statistics as human-readable lines."""
        from . import __version__

        uptime_s = time.monotonic() - self.started_monotonic
        c = self.snapshot()

        lines: list[str] = []
        lines.append(f"nmdcc {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            "hub: connects={} disconnects={} redirects={} bytes_in={} bytes_out={}".format(
                c["connects"],
                c["disconnects"],
                c["redirects"],
                c["bytes_in"],
                c["bytes_out"],
            )
        )
        lines.append(
            "commands: in={} unhandled={} malformed={} chat_failures={}".format(
                c["commands_in"],
                c["commands_unhandled"],
                c["commands_malformed"],
                c["chat_failures"],
            )
        )
        lines.append(
            "peers: connections={} bytes_in={}".format(
                c["peer_connections"], c["peer_bytes_in"]
            )
        )
        lines.append(
            "search: sent={} datagrams={}".format(c["searches"], c["search_datagrams"])
        )
        return "\n".join(lines)
