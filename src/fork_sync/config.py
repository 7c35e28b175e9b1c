import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_COMMIT_MESSAGE,
    DEFAULT_PROTECTED_PATHS,
    FORK_REMOTE,
    LOCAL_CONFIG_NAME,
    UPSTREAM_REMOTE,
)

logger = logging.getLogger(APP_NAME)

# Plain-valued keys and the TOML type each must have.
_FIELD_TYPES: dict[str, type] = {
    "url": str,
    "remote": str,
    "force_push": bool,
    "commit_message": str,
}


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '1hr', '30m') to seconds."""
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return int(num * multiplier[unit])


def normalize_path(value: str) -> str:
    """Strips leading './' and '/' so a protected path is repository-relative."""
    path = str(value).strip()
    while path.startswith(("./", "/")):
        path = path[2:] if path.startswith("./") else path[1:]
    if not path or path == ".":
        raise ValueError(f"Invalid protected path '{value}'")
    return path


@dataclass
class UpstreamConfig:
    """Settings for the repository being mirrored from.

    Attributes:
        url (str | None): Remote URL. None means the remote must already exist.
        remote (str): The git remote name used for upstream.
    """

    url: str | None = None
    remote: str = UPSTREAM_REMOTE


@dataclass
class ForkConfig:
    """Settings for the repository being published to.

    Attributes:
        remote (str): The git remote to push synchronized branches to.
        force_push (bool): Whether publishing may overwrite remote history.
    """

    remote: str = FORK_REMOTE
    force_push: bool = True


@dataclass
class SyncConfig:
    """Branch selection and overwrite settings.

    Attributes:
        protected_paths (list[str]): Paths kept from the fork's prior state.
        commit_message (str): Message for the commit re-applying protected paths.
        branches (list[str]): Glob patterns of upstream branches to process.
        exclude_branches (list[str]): Glob patterns of upstream branches to skip.
    """

    protected_paths: list[str] = field(
        default_factory=lambda: list(DEFAULT_PROTECTED_PATHS)
    )
    commit_message: str = DEFAULT_COMMIT_MESSAGE
    branches: list[str] = field(default_factory=lambda: ["*"])
    exclude_branches: list[str] = field(default_factory=list)


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
        git_timeout (int): Max seconds a single git command may run.
    """

    max_log_size: int = 5 * 1024 * 1024
    git_timeout: int = 600


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        upstream (UpstreamConfig): Upstream remote settings.
        fork (ForkConfig): Fork remote settings.
        sync (SyncConfig): Branch selection and protected paths.
        limits (LimitsConfig): Resource limits.
    """

    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    fork: ForkConfig = field(default_factory=ForkConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    # Cache for the base global configuration
    _global_cache: "Config | None" = None

    @classmethod
    def load(cls, repo_path: Path | None = None) -> "Config":
        """Loads and merges configuration from defaults, global, and local sources.

        Args:
            repo_path (Path | None): The repository root to search for local config.

        Returns:
            Config: The fully merged configuration object.
        """
        # 1. Load or Retrieve Global Config
        if cls._global_cache is None:
            instance = cls()
            if CONFIG_FILE.exists():
                instance._merge_from_file(CONFIG_FILE)
            cls._global_cache = instance

        # Copy every section so callers may mutate the result freely.
        cached = cls._global_cache
        instance = cls(
            upstream=replace(cached.upstream),
            fork=replace(cached.fork),
            sync=replace(
                cached.sync,
                protected_paths=list(cached.sync.protected_paths),
                branches=list(cached.sync.branches),
                exclude_branches=list(cached.sync.exclude_branches),
            ),
            limits=replace(cached.limits),
        )

        # 2. Load Local Config (if applicable)
        if repo_path:
            local_toml = repo_path / LOCAL_CONFIG_NAME
            pyproject = repo_path / "pyproject.toml"

            if local_toml.exists():
                instance._merge_from_file(local_toml)
            elif pyproject.exists():
                instance._merge_from_file(pyproject, section="tool.forksync")

        return instance

    def _merge_from_file(self, path: Path, section: str | None = None) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.
            section (str | None): Dot-separated section path (e.g., 'tool.forksync').
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            if section:
                for key in section.split("."):
                    data = data.get(key, {})

            if not data:
                return

            # Merge Logic
            if "upstream" in data:
                self.upstream = self._update_dataclass(
                    "upstream", self.upstream, data["upstream"]
                )
            if "fork" in data:
                self.fork = self._update_dataclass("fork", self.fork, data["fork"])
            if "limits" in data:
                self.limits = self._update_dataclass(
                    "limits", self.limits, data["limits"]
                )
            if "sync" in data:
                # Extract protected paths to prevent them from being overwritten during dataclass update
                sync_data = dict(data["sync"])
                new_paths = sync_data.pop("protected_paths", [])
                if isinstance(new_paths, str):
                    new_paths = [new_paths]
                self.sync = self._update_dataclass("sync", self.sync, sync_data)
                if new_paths:
                    self.add_protected_paths(new_paths, section="sync")

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except Exception as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    def add_protected_paths(self, paths: list[str], section: str = "cli") -> None:
        """Appends protected paths, dropping invalid entries and duplicates."""
        merged = list(self.sync.protected_paths)
        for raw in paths:
            try:
                merged.append(normalize_path(raw))
            except ValueError as e:
                logger.warning(f"Config error in [{section}].protected_paths: {e}")
        self.sync.protected_paths = list(dict.fromkeys(merged))

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        # 1. Catch and warn about typos / unknown keys
        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        # 2. Process valid keys
        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                # Route specific keys through our parsers
                if k == "max_log_size":
                    filtered_updates[k] = parse_size(v)
                elif k == "git_timeout":
                    filtered_updates[k] = parse_time(v)
                elif k in ["branches", "exclude_branches"]:
                    if not isinstance(v, list) or not all(
                        isinstance(p, str) for p in v
                    ):
                        raise ValueError(f"Expected a list of glob patterns, got {v!r}")
                    filtered_updates[k] = list(v)
                elif k in _FIELD_TYPES:
                    expected = _FIELD_TYPES[k]
                    if not isinstance(v, expected):
                        raise ValueError(
                            f"Expected {expected.__name__}, got {type(v).__name__} {v!r}"
                        )
                    filtered_updates[k] = v
                else:
                    filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)
