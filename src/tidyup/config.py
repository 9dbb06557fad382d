"""Configuration object, defaults and JSON persistence."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

from tidyup.core.pathvalidator import PathValidationError, validate_glob_pattern
from tidyup.utils import parse_size, xdg_config_home

log = logging.getLogger(__name__)

_CONFIG_DIR = "tidyup"
_CONFIG_FILE = "config.json"


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded or is invalid."""


@dataclass(slots=True)
class Categories:
    cache: bool = True
    temp: bool = True
    logs: bool = True
    downloads: bool = False
    package_managers: bool = True
    docker: bool = False
    node_modules: bool = True
    virtual_envs: bool = True
    build_artifacts: bool = True
    large_files: bool = True
    old_files: bool = True
    duplicates: bool = True


@dataclass(slots=True)
class AgeThresholds:
    """Minimum age in days before files of a category are considered."""

    logs: int = 30
    downloads: int = 90
    temp: int = 7


@dataclass(slots=True)
class SizeLimits:
    min_file_size: str = "1KB"
    max_file_size: str = "10GB"


@dataclass(slots=True)
class DevConfig:
    project_dirs: list[str] = field(
        default_factory=lambda: ["~/Projects", "~/Developer", "~/Code", "~/work", "~/src", "~/repos"]
    )


@dataclass(slots=True)
class LargeFilesConfig:
    min_size: str = "500MB"
    scan_paths: list[str] = field(default_factory=lambda: ["~"])
    exclude_paths: list[str] = field(
        default_factory=lambda: ["~/Library", "~/.Trash", "~/.local", "/System", "/Applications"]
    )


@dataclass(slots=True)
class OldFilesConfig:
    min_age_days: int = 180
    scan_paths: list[str] = field(default_factory=lambda: ["~/Downloads", "~/Documents", "~/Desktop"])
    exclude_paths: list[str] = field(default_factory=lambda: ["~/Documents/Work", "~/Documents/Important"])


@dataclass(slots=True)
class DuplicatesConfig:
    keep: str = "newest"
    scan_paths: list[str] = field(default_factory=lambda: ["~/Downloads", "~/Documents", "~/Desktop"])


@dataclass(slots=True)
class DockerConfig:
    enabled: bool = False
    clean_images: bool = True
    clean_containers: bool = True
    clean_volumes: bool = False
    clean_build_cache: bool = True
    only_dangling_images: bool = True
    only_stopped_containers: bool = True
    only_unused_volumes: bool = True
    image_age_days: int = 7
    container_age_days: int = 1
    keep_images: list[str] = field(default_factory=list)
    keep_containers: list[str] = field(default_factory=list)
    keep_volumes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SudoConfig:
    ask: bool = True
    use_pkexec: bool = True


def _default_protected() -> list[str]:
    return [
        "/", "/System", "/Applications", "/Library/System", "/bin", "/sbin", "/usr", "/etc",
        "/var", "/dev", "/boot", "/lib", "/lib64", "/opt", "/proc", "/root", "/run", "/srv", "/sys",
    ]


@dataclass(slots=True)
class Config:
    """Everything the scanners and the cleaner read from the user.

    ``min_file_age`` is in hours; every other age is in days.
    """

    categories: Categories = field(default_factory=Categories)
    age_thresholds: AgeThresholds = field(default_factory=AgeThresholds)
    size_limits: SizeLimits = field(default_factory=SizeLimits)
    exclude_patterns: list[str] = field(
        default_factory=lambda: [
            "*/important/*", "*.keep", "*/Documents/*", "*/Pictures/*", "*/Music/*", "*/Videos/*", "*/Movies/*",
        ]
    )
    whitelist_paths: list[str] = field(default_factory=list)
    protected_paths: list[str] = field(default_factory=_default_protected)
    dry_run: bool = False
    min_file_age: int = 1
    verbose: bool = False
    dev: DevConfig = field(default_factory=DevConfig)
    large_files: LargeFilesConfig = field(default_factory=LargeFilesConfig)
    old_files: OldFilesConfig = field(default_factory=OldFilesConfig)
    duplicates: DuplicatesConfig = field(default_factory=DuplicatesConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    sudo: SudoConfig = field(default_factory=SudoConfig)

    def validate(self) -> None:
        """Raise :class:`ConfigError` describing the first invalid setting."""
        for name in ("logs", "downloads", "temp"):
            if getattr(self.age_thresholds, name) < 0:
                raise ConfigError(f"{name} age threshold must be >= 0")
        if self.min_file_age < 0:
            raise ConfigError("min file age must be >= 0")
        if self.old_files.min_age_days < 0:
            raise ConfigError("old files minimum age must be >= 0")
        if self.docker.image_age_days < 0 or self.docker.container_age_days < 0:
            raise ConfigError("docker age thresholds must be >= 0")

        for pattern in self.exclude_patterns:
            try:
                validate_glob_pattern(pattern)
            except PathValidationError as e:
                raise ConfigError(f"invalid exclude pattern '{pattern}': {e.reason}") from e

        for path in self.whitelist_paths:
            if not os.path.isabs(path):
                raise ConfigError(f"whitelist path must be absolute: {path}")
        for path in self.protected_paths:
            if not os.path.isabs(path):
                raise ConfigError(f"protected path must be absolute: {path}")

        if self.duplicates.keep not in ("newest", "oldest"):
            raise ConfigError(f"duplicates.keep must be 'newest' or 'oldest', not {self.duplicates.keep!r}")

        for label, value in (
            ("size_limits.min_file_size", self.size_limits.min_file_size),
            ("size_limits.max_file_size", self.size_limits.max_file_size),
            ("large_files.min_size", self.large_files.min_size),
        ):
            try:
                parse_size(value)
            except ValueError as e:
                raise ConfigError(f"{label}: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Build a config from *data*, filling gaps with defaults.

        Unknown keys are ignored with a warning.
        """
        config = cls()
        _merge(config, data, "")
        return config


def _merge(target: Any, data: dict[str, Any], prefix: str) -> None:
    known = {f.name for f in fields(target)}
    for key, value in data.items():
        if key not in known:
            log.warning("Ignoring unknown config key: %s%s", prefix, key)
            continue
        current = getattr(target, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ConfigError(f"{prefix}{key} must be an object")
            _merge(current, value, f"{prefix}{key}.")
        else:
            setattr(target, key, value)


def default_path() -> Path:
    return xdg_config_home() / _CONFIG_DIR / _CONFIG_FILE


def load(path: Path | None = None) -> Config:
    """Load and validate the configuration at *path*.

    A missing file yields the defaults.

    Raises:
        ConfigError: If the file cannot be read, parsed or validated.
    """
    path = path or default_path()
    if not path.exists():
        log.debug("No config file at %s, using defaults", path)
        return Config()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigError(f"Could not load config from {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")

    config = Config.from_dict(data)
    config.validate()
    return config


def save(config: Config, path: Path | None = None) -> Path:
    """Write *config* to *path* as JSON and return the path written."""
    path = path or default_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return path
