import os
from pathlib import Path

"""Global constants and path definitions for git-autosync.

This module defines the filesystem layout (adhering to XDG standards where applicable),
the application identifier, and the fixed git defaults used by the sync pipeline.
"""

# --- Identity ---
APP_NAME = "git-autosync"
"""str: The human-readable application name, also used as the logger name."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-autosync"
"""Path: The directory for runtime state data (logs, pid file)."""

# Ensure state directory exists immediately upon module import.
STATE_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

PID_FILE = STATE_DIR / "daemon.pid"
"""Path: The file path storing the daemon's process ID."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/git-autosync"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

# --- Git / Logic Constants ---
GIT_DIR_NAME = ".git"
"""str: Name of the version-control metadata directory; events inside it are noise."""

DEFAULT_REMOTE = "origin"
"""str: The remote the pipeline fetches from and pushes to."""

DEFAULT_BRANCH = "master"
"""str: The branch name used on both sides of the push refspec."""

COMMIT_MESSAGE_PREFIX = "Auto-Commit at: "
"""str: Prefix of every automatic commit message, followed by a local timestamp."""

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
"""str: strftime format for commit message and log timestamps."""

GIT_LOCK_FILES = [
    "MERGE_HEAD",
    "REBASE_HEAD",
    "CHERRY_PICK_HEAD",
    "BISECT_LOG",
    "rebase-merge",
    "rebase-apply",
]
"""
list[str]: Git internal files indicating an
active state (merge/rebase) that blocks automatic commits.
"""
