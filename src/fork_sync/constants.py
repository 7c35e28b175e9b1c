import os
from pathlib import Path

"""Global constants and configuration path definitions for fork-sync.

This module defines the filesystem layout (adhering to XDG standards where applicable),
application identifiers, and default mirroring values used across the
application.
"""

# --- Identity ---
APP_NAME = "fork-sync"
"""str: The human-readable application name."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "fork-sync"
"""Path: The directory for runtime state data (logs)."""

# Ensure state directory exists immediately upon module import.
STATE_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = STATE_DIR / "sync.log"
"""Path: The file path for the headless run logs."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/fork-sync"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

LOCAL_CONFIG_NAME = "forksync.toml"
"""str: The repository-local configuration file name."""

# --- Git / Logic Constants ---
UPSTREAM_REMOTE = "upstream"
"""str: The default name of the remote being mirrored from."""

FORK_REMOTE = "origin"
"""str: The default name of the remote being published to."""

DEFAULT_PROTECTED_PATHS = [".github/workflows/"]
"""list[str]: Paths whose fork-local content survives every sync."""

DEFAULT_COMMIT_MESSAGE = "Exclude changes to .github/workflows"
"""str: Message of the commit that re-applies protected paths on top of upstream."""

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
active state (merge/rebase) that blocks a sync run.
"""
