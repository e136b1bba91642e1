"""Per-platform config and data directories."""

from __future__ import annotations

import os
import sys
from pathlib import Path

APP_NAME = "concierge"

# kind -> (override env var, windows base env var, windows fallback, XDG env var, XDG fallback)
_LOCATIONS = {
    "config": ("CONCIERGE_CONFIG_DIR", "APPDATA", ("AppData", "Roaming"), "XDG_CONFIG_HOME", (".config",)),
    "data": ("CONCIERGE_DATA_DIR", "LOCALAPPDATA", ("AppData", "Local"), "XDG_DATA_HOME", (".local", "share")),
}


def _app_dir(kind: str) -> Path:
    override, win_env, win_default, xdg_env, xdg_default = _LOCATIONS[kind]
    if os.environ.get(override):
        return Path(os.environ[override])

    home = Path.home()
    if sys.platform == "win32":
        base = os.environ.get(win_env) or home.joinpath(*win_default)
    elif sys.platform == "darwin":
        base = home / "Library" / "Application Support"
    else:
        base = os.environ.get(xdg_env) or home.joinpath(*xdg_default)
    return Path(base) / APP_NAME


def get_config_dir() -> Path:
    """Where ``config.yaml`` is looked up when no path is given."""
    return _app_dir("config")


def get_data_dir() -> Path:
    """Where the plan and approval databases live."""
    return _app_dir("data")
