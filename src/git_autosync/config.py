import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_BRANCH,
    DEFAULT_REMOTE,
)

logger = logging.getLogger(APP_NAME)


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


def parse_duration(value: int | float | str) -> float:
    """Converts human-readable durations (e.g., '500ms', '2s', '1m') to seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value < 0:
            raise ValueError(f"Negative duration '{value}'")
        return float(value)
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(ms|s|sec|m|min)?s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid duration format '{value}'")
    num, unit = float(match.group(1)), match.group(2) or "s"
    multiplier = {"ms": 0.001, "s": 1, "sec": 1, "m": 60, "min": 60}
    return num * multiplier[unit]


@dataclass
class CoreConfig:
    """Remote and branch the pipeline synchronizes with.

    Attributes:
        remote_name (str): The git remote to fetch from and push to.
        branch (str): The branch name on both sides of the push refspec.
        remote_url (str): URL used to create the remote when it is missing.
    """

    remote_name: str = DEFAULT_REMOTE
    branch: str = DEFAULT_BRANCH
    remote_url: str = ""


@dataclass
class WatchConfig:
    """Filesystem watching settings.

    Attributes:
        paths (list[str]): Repository roots to watch.
        debounce (float): Seconds of quiet before a path's change is delivered.
    """

    paths: list[str] = field(default_factory=list)
    debounce: float = 1.0


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        core (CoreConfig): Remote and branch settings.
        watch (WatchConfig): Watched paths and debouncing.
        limits (LimitsConfig): Resource limits.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    # Cache for the configuration read from the default location
    _global_cache: "Config | None" = None

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Loads configuration from defaults and a TOML file.

        Args:
            path (Path | None): An explicit config file. When omitted, the user's
                global config file is used and the result is cached.

        Returns:
            Config: The fully merged configuration object.
        """
        if path is not None:
            instance = cls()
            if path.exists():
                instance._merge_from_file(path)
            return instance

        if cls._global_cache is None:
            instance = cls()
            if CONFIG_FILE.exists():
                instance._merge_from_file(CONFIG_FILE)
            cls._global_cache = instance

        cached = cls._global_cache
        return replace(
            cached,
            core=replace(cached.core),
            watch=replace(cached.watch, paths=list(cached.watch.paths)),
            limits=replace(cached.limits),
        )

    def _merge_from_file(self, path: Path) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            if not data:
                return

            if "core" in data:
                self.core = self._update_dataclass("core", self.core, data["core"])
            if "watch" in data:
                # Paths accumulate rather than replace, keeping order and uniqueness.
                new_paths = data["watch"].pop("paths", [])
                self.watch = self._update_dataclass("watch", self.watch, data["watch"])
                if new_paths:
                    merged = [*self.watch.paths, *(str(p) for p in new_paths)]
                    self.watch.paths = list(dict.fromkeys(merged))
            if "limits" in data:
                self.limits = self._update_dataclass(
                    "limits", self.limits, data["limits"]
                )

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except Exception as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k == "max_log_size":
                    filtered_updates[k] = parse_size(v)
                elif k == "debounce":
                    filtered_updates[k] = parse_duration(v)
                else:
                    filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)
