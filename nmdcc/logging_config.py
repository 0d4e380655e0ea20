from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import ClientConfig

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Loggers that can be tuned apart from the root level. Socket and peer
# traffic are the noisy ones at DEBUG.
_MODULE_LOGGERS = {
    "nmdcc.transport": "log_transport_level",
    "nmdcc.peer": "log_peer_level",
}


def _parse_level(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    if text == "WARN":
        text = "WARNING"
    named = logging.getLevelName(text)
    if isinstance(named, int):
        return named
    try:
        return int(text)
    except ValueError:
        return default


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value)
    return s if s.strip() else None


def _file_handler(path_text: str) -> logging.Handler:
    p = Path(os.path.expanduser(path_text))
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    try:
        os.chmod(p, 0o600)
    except OSError:
        pass
    return handler


def configure_logging(
    cfg: ClientConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install nmdcc's root handlers and levels.

    Replaces any handlers already on the root logger, so calling it again
    (e.g. after reloading the config) does not duplicate output. The
    transport and peer loggers follow their own configured level when one
    is set and inherit the root level otherwise.
    """

    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())

    log_file = _optional_text(override_file) if override_file is not None else None
    if log_file is None:
        log_file = _optional_text(cfg.log_file)
    if log_file:
        handlers.append(_file_handler(log_file))

    formatter = logging.Formatter(
        fmt=str(cfg.log_format).strip() or DEFAULT_FORMAT,
        datefmt=_optional_text(cfg.log_datefmt),
    )

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
    root.setLevel(_parse_level(override_level or cfg.log_level, logging.INFO))

    for name, field in _MODULE_LOGGERS.items():
        level = _parse_level(getattr(cfg, field), logging.NOTSET)
        logging.getLogger(name).setLevel(level)

    logging.captureWarnings(True)
