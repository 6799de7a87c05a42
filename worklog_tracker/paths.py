from __future__ import annotations

import os
import sys
from pathlib import Path

APP_DIR_NAME = "WorklogTracker"
HOME_ENV_VAR = "WORKLOG_TRACKER_HOME"


def data_directory() -> Path:
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override)
    if sys.platform == "win32":
        local_appdata = os.environ.get("LOCALAPPDATA")
        if local_appdata:
            base = Path(local_appdata)
        else:
            base = Path.home() / "AppData" / "Local"
        return base / APP_DIR_NAME
    return Path.home() / ".local" / "share" / "worklog-tracker"


def database_path() -> Path:
    return data_directory() / "worklog.sqlite3"


def ensure_directories() -> None:
    data_directory().mkdir(parents=True, exist_ok=True)
