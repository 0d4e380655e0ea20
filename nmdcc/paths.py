from __future__ import annotations

import os
from pathlib import Path


def default_nmdcc_dir() -> Path:
    override = os.environ.get("NMDCC_HOME")
    if override:
        return Path(override)
    return Path.home() / ".nmdcc"


def default_config_path() -> Path:
    return default_nmdcc_dir() / "nmdcc.toml"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # May fail on some filesystems.
        os.chmod(path, 0o700)
    except OSError:
        pass
