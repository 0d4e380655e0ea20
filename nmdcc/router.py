from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import TYPE_CHECKING

from .codec import unescape
from .constants import (
    DEFAULT_HUB_PORT,
    HUB_GET_NICK_LIST,
    HUB_SUPPORTS,
    HUB_VERSION,
    PROTOCOL_BYTES_ENCODING,
)
from .errors import ProtocolError, TransportError
from .events import HubEvent
from .lock import derive_key, lock_challenge
from .users import format_profile, parse_profile

if TYPE_CHECKING:
    from .session import HubSession

_USER_COMMAND_RE = re.compile(r"(\d+) (\d+)\s?([^$]*)\$?(.*)", re.DOTALL)

_REDIRECT_SCHEMES = ("dchub://", "nmdc://")


def parse_public(line: str) -> tuple[str, str] | None:
    """Split ``<sender> message`` into (sender, raw message)."""
    rpos = line.find("> ")
    if not line.startswith("<") or rpos == -1:
        return None
    return line[1:rpos], line[rpos + 2 :]


def parse_private(rem: str) -> tuple[str, str] | None:
    """Split ``<recipient> From: <sender> $<<sender>> message`` into (sender, raw message)."""
    lpos = rem.find("$<")
    if lpos == -1:
        return None
    rpos = rem.find("> ", lpos + 2)
    if rpos == -1:
        return None
    return rem[lpos + 2 : rpos], rem[rpos + 2 :]


def parse_user_command(rem: str) -> tuple[int, int, str, str] | None:
    m = _USER_COMMAND_RE.match(rem)
    if m is None:
        return None
    return int(m[1]), int(m[2]), m[3], m[4]


def parse_redirect(rem: str) -> tuple[str, int]:
    target = rem.strip()
    for scheme in _REDIRECT_SCHEMES:
        if target.lower().startswith(scheme):
            target = target[len(scheme) :]
    target = target.rstrip("/")

    parts = target.split(":")
    if len(parts) == 2:
        host, port_text = parts
        try:
            port = int(port_text)
        except ValueError as e:
            raise ProtocolError(f"bad redirect port {port_text!r}") from e
    else:
        host, port = target, DEFAULT_HUB_PORT

    if not host:
        raise ProtocolError("redirect has no host")
    return host, port


class HubCommandRouter:
    """
    Dispatches framed hub commands for a HubSession.

    Called by the session with its state lock held, one command at a time in
    the order the FrameAssembler produced them.
    """

    def __init__(self, hub: HubSession) -> None:
        self.hub = hub
        self.log = logging.getLogger("nmdcc.router")
        self._handlers: dict[str, Callable[[str], None]] = {
            "$Lock": self._handle_lock,
            "$Hello": self._handle_hello,
            "$HubName": self._handle_hub_name,
            "$ValidateDenide": self._handle_validate_denide,
            "$HubIsFull": self._handle_hub_is_full,
            "$BadPass": self._handle_bad_pass,
            "$GetPass": self._handle_get_pass,
            "$Quit": self._handle_quit,
            "$MyINFO": self._handle_my_info,
            "$NickList": self._handle_nick_list,
            "$To:": self._handle_to,
            "$UserIP": self._handle_user_ip,
            "$UserCommand": self._handle_user_command,
            "$ForceMove": self._handle_force_move,
            "$ConnectToMe": self._handle_connect_to_me,
            "$SR": self._handle_search_result,
        }
        self._inert = frozenset(
            {"$Supports", "$UserList", "$OpList", "$HubTopic", "$Search"}
        )

    def dispatch(self, command: str) -> None:
        if not command:
            return

        self.hub.stats.inc("commands_in")
        self.log.debug("RX %s", command)

        try:
            self._dispatch(command)
        except ValueError as e:
            # ProtocolError is a ValueError too.
            self.hub.stats.inc("commands_malformed")
            self.log.debug("Malformed command %r: %s", command[:80], e)
            self.hub.events.emit(HubEvent.DEBUG, f"Malformed command: {e}")
        except TransportError as e:
            self.log.warning("Reply failed: %s", e)
            self.hub.events.emit(HubEvent.DEBUG, f"Reply failed: {e}")
        except Exception:
            self.log.exception("Command handler failed command=%r", command[:80])

    def _dispatch(self, command: str) -> None:
        if command[0] == "<":
            parsed = parse_public(command)
            if parsed is None:
                self.hub.events.emit(HubEvent.SYSTEM_MESSAGE, unescape(command))
                return
            sender, message = parsed
            self.hub.events.emit(HubEvent.PUBLIC_MESSAGE, sender, unescape(message))
            return

        if command[0] != "$":
            self.hub.events.emit(HubEvent.SYSTEM_MESSAGE, unescape(command))
            return

        cmd, _, rem = command.partition(" ")
        handler = self._handlers.get(cmd)
        if handler is not None:
            handler(rem)
        elif cmd not in self._inert:
            self.hub.stats.inc("commands_unhandled")
            self.hub.events.emit(HubEvent.DEBUG, f'Unhandled "{cmd}"')

    def _handle_lock(self, rem: str) -> None:
        key = derive_key(lock_challenge(rem))
        self.hub.state.sent_handshake_hello = False
        self.hub.send_raw(f"{HUB_SUPPORTS}|")
        self.hub.send_raw(f"$Key {key}|", encoding=PROTOCOL_BYTES_ENCODING)
        self.hub.send_raw(f"$ValidateNick {self.hub.state.own_nick}|")

    def _handle_hello(self, rem: str) -> None:
        state = self.hub.state
        if rem == state.own_nick and not state.sent_handshake_hello:
            # Only once per connection.
            state.sent_handshake_hello = True
            self.hub.send_raw(f"{HUB_VERSION}|")
            self.hub.send_raw(f"{HUB_GET_NICK_LIST}|")
            self.hub.send_raw(f"$MyINFO {format_profile(self.hub.config)}|")
        else:
            self.hub.users.note_presence(rem)

    def _handle_hub_name(self, rem: str) -> None:
        self.hub.state.hub_name = rem
        self.hub.events.emit(HubEvent.HUB_NAME_CHANGED, rem)

    def _handle_validate_denide(self, rem: str) -> None:
        # The hub gives no reason; a configured password is taken to mean the
        # password was the problem.
        if self.hub.config.password:
            self.hub.events.emit(HubEvent.SYSTEM_MESSAGE, "Password incorrect.")
        else:
            self.hub.events.emit(HubEvent.SYSTEM_MESSAGE, "Nick already in use.")

    def _handle_hub_is_full(self, rem: str) -> None:
        self.hub.events.emit(HubEvent.SYSTEM_MESSAGE, "Hub is full.")

    def _handle_bad_pass(self, rem: str) -> None:
        self.hub.events.emit(HubEvent.SYSTEM_MESSAGE, "Password incorrect.")

    def _handle_get_pass(self, rem: str) -> None:
        self.hub.send_raw(f"$MyPass {self.hub.config.password}|")

    def _handle_quit(self, rem: str) -> None:
        self.hub.users.note_departure(rem)

    def _handle_my_info(self, rem: str) -> None:
        record = parse_profile(rem)
        self.hub.users.apply_profile(record)
        self.hub.events.emit(HubEvent.USER_UPDATED, rem)

    def _handle_nick_list(self, rem: str) -> None:
        for nick in rem.split("$$"):
            if nick:
                self.hub.users.note_presence(nick)

    def _handle_to(self, rem: str) -> None:
        parsed = parse_private(rem)
        if parsed is None:
            raise ProtocolError("private message has no '$<sender> ' part")
        sender, message = parsed
        self.hub.events.emit(HubEvent.PRIVATE_MESSAGE, sender, unescape(message))

    def _handle_user_ip(self, rem: str) -> None:
        # Last line of the login sequence on common hubsofts.
        self.hub.mark_established()

    def _handle_user_command(self, rem: str) -> None:
        parsed = parse_user_command(rem)
        if parsed is None:
            self.log.debug("Dropping unparseable $UserCommand %r", rem[:80])
            return
        kind, context, title, body = parsed
        self.hub.events.emit(
            HubEvent.USER_COMMAND, kind, context, title, unescape(body)
        )

    def _handle_force_move(self, rem: str) -> None:
        if not self.hub.config.follow_redirects:
            self.hub.events.emit(
                HubEvent.DEBUG, f"Ignoring redirect request for '{rem}'"
            )
            return
        host, port = parse_redirect(rem)
        self.hub.events.emit(HubEvent.SYSTEM_MESSAGE, "Redirecting hub...")
        self.hub.redirect(host, port)

    def _handle_connect_to_me(self, rem: str) -> None:
        self.hub.events.emit(HubEvent.CONNECT_TO_ME, rem)

    def _handle_search_result(self, rem: str) -> None:
        self.hub.events.emit(HubEvent.SEARCH_RESULT, rem)
