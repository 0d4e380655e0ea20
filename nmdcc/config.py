from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any

from .constants import DEFAULT_HUB_PORT, RECONNECT_INTERVAL_S


@dataclass(frozen=True)
class ClientConfig:
    config_path: str | None = None
    address: str = "127.0.0.1"
    port: int = DEFAULT_HUB_PORT
    use_tls: bool = False
    tls_verify: bool = False
    password: str = ""
    auto_reconnect: bool = False
    encoding: str = "utf-8"
    nick: str = "nmdcc_user"
    description: str = ""
    version_tag: str = "nmdcc 0.3"
    share_size: int = 0
    follow_redirects: bool = False
    ignore_chat_failures: bool = False
    connect_immediately: bool = True
    active_mode: bool = True
    connect_timeout_s: float = 30.0
    reconnect_interval_s: float = RECONNECT_INTERVAL_S
    listen_address: str = "0.0.0.0"
    listen_port: int = 0
    search_address: str = "0.0.0.0"
    search_port: int = 0
    active_search_timeout_s: float = 0.0
    log_level: str = "INFO"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None
    log_transport_level: str | None = None
    log_peer_level: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
    "transport_level": "log_transport_level",
    "peer_level": "log_peer_level",
}

_OPTIONAL_STR_KEYS = (
    "log_file",
    "log_datefmt",
    "log_transport_level",
    "log_peer_level",
)


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: ClientConfig, data: dict[str, Any]) -> ClientConfig:
    """Merge a parsed config file over ``base``.

    Top-level keys and a ``[hub]`` table map onto fields directly; a
    ``[logging]`` table maps onto the ``log_*`` fields. Unknown keys are ignored.
    """
    hub = data.get("hub") if isinstance(data, dict) else None
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped = {_LOGGING_KEYS[k]: v for k, v in log_table.items() if k in _LOGGING_KEYS}
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # Where the file came from is decided by the caller, not by the file.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    for key in _OPTIONAL_STR_KEYS:
        if key in updates and updates[key] == "":
            updates[key] = None

    for key in ("port", "share_size", "listen_port", "search_port"):
        if key in updates:
            try:
                updates[key] = int(updates[key])
            except (TypeError, ValueError) as e:
                raise ValueError(f"invalid integer for {key}: {updates[key]!r}") from e

    return replace(base, **updates) if updates else base
