from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import ProtocolError
from .events import EventHub, HubEvent

if TYPE_CHECKING:
    from .config import ClientConfig


@dataclass
class UserRecord:
    nick: str
    description: str = ""
    tag: str = ""
    share_size: str = ""

    @property
    def share_bytes(self) -> int:
        try:
            return int(self.share_size)
        except ValueError:
            return 0


def parse_profile(line: str) -> UserRecord:
    """
    Parse a ``$MyINFO`` payload.

    Shape: ``$ALL <nick> <description>$ $<speed><flag>$<email>$<share>$``
    where the description may end in a ``<tag>`` client tag.
    """
    if not line.startswith("$ALL "):
        raise ProtocolError("profile does not start with '$ALL '")

    ds = line.find(" ", 6)
    if ds == -1:
        raise ProtocolError("profile has no nick terminator")
    nick = line[5:ds]

    dollar = line.find("$", 2)
    if dollar <= ds:
        raise ProtocolError("profile has no description terminator")
    description = line[ds + 1 : dollar]

    last = line.rfind("$")
    prev = line.rfind("$", 0, last)
    if prev < dollar:
        raise ProtocolError("profile has no share size field")
    share = line[prev + 1 : last]

    tag = ""
    tpos = description.rfind("<")
    if tpos != -1 and description.endswith(">"):
        tag = description[tpos + 1 : -1]
        description = description[:tpos].rstrip()

    return UserRecord(nick=nick, description=description, tag=tag, share_size=share)


def format_profile(cfg: ClientConfig) -> str:
    """Build our own ``$MyINFO`` payload (without the command keyword)."""
    desc = f"{cfg.description} " if cfg.description else ""
    mode = "A" if cfg.active_mode else "P"
    return (
        f"$ALL {cfg.nick} {desc}<{cfg.version_tag},M:{mode},H:1/0/0,S:5>"
        f"$ $10  $${int(cfg.share_size)}$"
    )


class UserDirectory:
    """
    Live nick -> UserRecord map for one hub.

    Writes happen only from the hub session's dispatch; the lock keeps reads
    from front-end threads consistent.
    """

    def __init__(self, events: EventHub | None = None) -> None:
        self.events = events
        self._lock = threading.Lock()
        self._users: dict[str, UserRecord] = {}

    def _emit(self, event: HubEvent, *args) -> None:
        if self.events is not None:
            self.events.emit(event, *args)

    def note_presence(self, nick: str) -> bool:
        with self._lock:
            if nick in self._users:
                return False
            self._users[nick] = UserRecord(nick=nick)
        self._emit(HubEvent.USER_JOINED, nick)
        return True

    def apply_profile(self, record: UserRecord) -> bool:
        with self._lock:
            is_new = record.nick not in self._users
            self._users[record.nick] = record
        if is_new:
            self._emit(HubEvent.USER_JOINED, record.nick)
        return is_new

    def note_departure(self, nick: str) -> bool:
        with self._lock:
            if self._users.pop(nick, None) is None:
                return False
        self._emit(HubEvent.USER_DEPARTED, nick)
        return True

    def get(self, nick: str) -> UserRecord | None:
        with self._lock:
            return self._users.get(nick)

    def nicks(self) -> list[str]:
        with self._lock:
            return sorted(self._users)

    def clear(self) -> None:
        with self._lock:
            self._users.clear()

    def __contains__(self, nick: object) -> bool:
        with self._lock:
            return nick in self._users

    def __len__(self) -> int:
        with self._lock:
            return len(self._users)
