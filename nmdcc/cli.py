from __future__ import annotations

import argparse
import os
import re
import sys
import threading
from dataclasses import asdict, replace
from pathlib import Path
from typing import IO

import tomlkit

from .config import ClientConfig, apply_config_data, load_toml
from .errors import NmdcError
from .events import HubEvent
from .logging_config import configure_logging
from .paths import default_config_path, ensure_private_dir
from .peer import PeerSession, PeerTransferNegotiator
from .search import SearchDispatcher
from .session import HubSession

_FIELD_COMMENTS: dict[str, str] = {
    "address": "Hub host name or IP address.",
    "port": "Hub port (411 is the NMDC default).",
    "use_tls": "Connect with TLS; tls_verify checks the hub certificate.",
    "password": "Registered-nick password (leave empty if not registered).",
    "auto_reconnect": "Retry every reconnect_interval_s seconds while not logged in.",
    "encoding": "Text encoding used by the hub.",
    "nick": "Your nickname and profile.",
    "share_size": "Advertised share size in bytes.",
    "follow_redirects": "Follow $ForceMove redirects to another hub.",
    "ignore_chat_failures": "Log failed chat sends instead of raising.",
    "connect_immediately": "Connect as soon as the client starts.",
    "active_mode": "Active mode accepts inbound peer connections on listen_address:listen_port.",
    "search_address": "Local UDP address for active search results (port 0 = any).",
    "active_search_timeout_s": "Close the active search socket after this many seconds (0 = never).",
}

_LOGGING_FIELDS = {
    "log_level": "level",
    "log_console": "console",
    "log_file": "file",
    "log_format": "format",
    "log_datefmt": "datefmt",
    "log_transport_level": "transport_level",
    "log_peer_level": "peer_level",
}


def _write_default_config(config_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    defaults = asdict(ClientConfig())
    defaults.pop("config_path", None)

    doc = tomlkit.document()
    doc.add(tomlkit.comment("nmdcc configuration (TOML)"))
    doc.add(tomlkit.comment(""))
    doc.add(tomlkit.comment("This file was created on first run."))
    doc.add(tomlkit.comment("Edit it, then start nmdcc again."))
    doc.add(tomlkit.nl())

    hub = tomlkit.table()
    for key, value in defaults.items():
        if key in _LOGGING_FIELDS:
            continue
        comment = _FIELD_COMMENTS.get(key)
        if comment:
            hub.add(tomlkit.nl())
            hub.add(tomlkit.comment(comment))
        hub.add(key, value)
    doc.add("hub", hub)

    log_table = tomlkit.table()
    log_table.add(tomlkit.comment("Leave file empty to log to the console only."))
    log_table.add(
        tomlkit.comment("transport_level and peer_level override the level of those loggers.")
    )
    for key, name in _LOGGING_FIELDS.items():
        value = defaults[key]
        log_table.add(name, "" if value is None else value)
    doc.add("logging", log_table)

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(tomlkit.dumps(doc))
    try:
        os.chmod(config_path, 0o600)
    except OSError:
        pass


def _ensure_first_run_files(config_path: str) -> bool:
    if os.path.exists(config_path):
        return False
    _write_default_config(config_path)
    return True


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="nmdcc", description="Connect to an NMDC hub")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--address", default=None, help="Hub host")
    p.add_argument("--port", type=int, default=None, help="Hub port")
    p.add_argument("--nick", default=None, help="Nickname")
    p.add_argument("--password", default=None, help="Nick password")
    p.add_argument("--tls", action="store_true", help="Connect with TLS")
    p.add_argument(
        "--auto-reconnect",
        action="store_true",
        help="Reconnect on a fixed interval while not logged in",
    )
    p.add_argument(
        "--follow-redirects", action="store_true", help="Follow hub redirects"
    )
    p.add_argument(
        "--passive",
        action="store_true",
        help="Passive mode (no inbound peer connections)",
    )
    p.add_argument(
        "--debug-events",
        action="store_true",
        help="Print protocol debug events to the console",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )
    return p


def _apply_args(cfg: ClientConfig, args: argparse.Namespace) -> ClientConfig:
    if args.address is not None:
        cfg = replace(cfg, address=args.address)
    if args.port is not None:
        cfg = replace(cfg, port=int(args.port))
    if args.nick is not None:
        cfg = replace(cfg, nick=args.nick)
    if args.password is not None:
        cfg = replace(cfg, password=args.password)
    if args.tls:
        cfg = replace(cfg, use_tls=True)
    if args.auto_reconnect:
        cfg = replace(cfg, auto_reconnect=True)
    if args.follow_redirects:
        cfg = replace(cfg, follow_redirects=True)
    if args.passive:
        cfg = replace(cfg, active_mode=False)
    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) or None)
    return cfg


_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class ConsoleClient:
    """Line-oriented front end: prints hub events, reads commands from stdin."""

    def __init__(self, cfg: ClientConfig, *, show_debug: bool = False) -> None:
        self.hub = HubSession(cfg)
        self.show_debug = show_debug
        self._files: dict[int, IO[bytes]] = {}
        self._files_lock = threading.Lock()
        self.peers = PeerTransferNegotiator(
            self.hub, sink=self._write_file_list, on_closed=self._close_file_list
        )
        self.search = SearchDispatcher(self.hub, on_result=self._print_result)
        self._subscribe()

    def _out(self, text: str) -> None:
        print(text, flush=True)

    def _subscribe(self) -> None:
        ev = self.hub.events
        ev.subscribe(HubEvent.CONNECTED, lambda: self._out("* Logged in."))
        ev.subscribe(HubEvent.CLOSED, lambda: self._out("* Disconnected."))
        ev.subscribe(HubEvent.SYSTEM_MESSAGE, lambda s: self._out(f"* {s}"))
        ev.subscribe(HubEvent.PUBLIC_MESSAGE, lambda u, m: self._out(f"<{u}> {m}"))
        ev.subscribe(HubEvent.PRIVATE_MESSAGE, lambda u, m: self._out(f"[pm] <{u}> {m}"))
        ev.subscribe(HubEvent.USER_JOINED, lambda u: self._out(f"* {u} joined"))
        ev.subscribe(HubEvent.USER_DEPARTED, lambda u: self._out(f"* {u} left"))
        ev.subscribe(HubEvent.HUB_NAME_CHANGED, lambda s: self._out(f"* Hub: {s}"))
        ev.subscribe(
            HubEvent.USER_COMMAND,
            lambda kind, ctx, title, body: self._out(f"* hub command [{title}]"),
        )
        if self.show_debug:
            ev.subscribe(HubEvent.DEBUG, lambda s: self._out(f"# {s}"))

    def _print_result(self, text: str, origin) -> None:
        where = "hub" if origin is None else f"{origin[0]}:{origin[1]}"
        self._out(f"[search {where}] {text}")

    def _write_file_list(self, session: PeerSession, data: bytes) -> None:
        with self._files_lock:
            f = self._files.get(id(session))
            if f is None:
                name = _UNSAFE_NAME.sub("_", session.remote_nick or "peer")
                f = open(f"{name}.files.xml.bz2", "wb")
                self._files[id(session)] = f
        f.write(data)

    def _close_file_list(self, session: PeerSession) -> None:
        with self._files_lock:
            f = self._files.pop(id(session), None)
        if f is not None:
            f.close()
            self._out(
                f"* File list from {session.remote_nick}: {len(session.receive_buffer)} bytes"
            )

    def handle_line(self, line: str) -> bool:
        """Run one input line; returns False when the user asked to quit."""
        line = line.rstrip("\r\n")
        if not line:
            return True
        if not line.startswith("/"):
            self.hub.say(line)
            return True

        cmd, _, arg = line.partition(" ")
        if cmd == "/quit":
            return False
        if cmd == "/pm":
            nick, _, message = arg.partition(" ")
            self.hub.private_message(nick, message)
        elif cmd == "/users":
            nicks = self.hub.users.nicks()
            self._out(f"* {len(nicks)} users: " + ", ".join(nicks))
        elif cmd == "/search":
            self.search.search_passive(arg)
        elif cmd == "/asearch":
            self.search.search_active(arg)
        elif cmd == "/get":
            nick = arg.strip()
            if not nick:
                self._out("* Usage: /get <nick>")
            else:
                self.peers.request_transfer(nick)
        elif cmd == "/raw":
            self.hub.send_raw(arg)
        elif cmd == "/stats":
            self._out(self.hub.stats.format_stats())
        elif cmd == "/reconnect":
            self.hub.connect()
        else:
            self._out(f"* Unknown command {cmd}")
        return True

    def run(self) -> None:
        self.hub.start()
        try:
            for line in sys.stdin:
                try:
                    if not self.handle_line(line):
                        break
                except NmdcError as e:
                    self._out(f"! {e}")
        except KeyboardInterrupt:
            pass
        finally:
            self.close()

    def close(self) -> None:
        self.search.close()
        self.peers.close()
        self.hub.close()
        with self._files_lock:
            files, self._files = list(self._files.values()), {}
        for f in files:
            f.close()


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    if _ensure_first_run_files(config_path):
        print(
            "Created default nmdcc config. Edit it before connecting:\n"
            f"- Config: {config_path}\n"
            "\nThen re-run nmdcc.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = ClientConfig(config_path=config_path)
    cfg = apply_config_data(cfg, load_toml(config_path))
    cfg = _apply_args(cfg, args)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    ConsoleClient(cfg, show_debug=args.debug_events).run()


if __name__ == "__main__":
    main()
