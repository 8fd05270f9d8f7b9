"""
User configuration for revi.

Settings live in ``<repo>/.revi/config.json``. A missing file means
defaults; a present but invalid file is a ConfigError so that typos are
not silently ignored.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .models import DIFF_MODES

CONFIG_FILE_NAME = "config.json"

DEFAULT_EXCLUDE = [
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "*.generated.ts",
    "dist/**",
]


@dataclass
class ReviConfig:
    default_base: str | None = None
    default_diff_mode: str = "split"
    exclude: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE))
    danger_zone: list[str] = field(default_factory=list)
    save_debounce_ms: int = 500
    diff_cache_size: int = 100
    git_timeout_seconds: float = 30.0

    @property
    def save_debounce_seconds(self) -> float:
        return self.save_debounce_ms / 1000.0

    def is_excluded(self, path: str) -> bool:
        name = path.rsplit("/", 1)[-1]
        for pattern in self.exclude:
            if fnmatch(path, pattern) or fnmatch(name, pattern):
                return True
            if pattern.endswith("/**") and path.startswith(pattern[:-2]):
                return True
        return False

    def is_danger_zone(self, path: str) -> bool:
        return any(fnmatch(path, pattern) for pattern in self.danger_zone)


def _string_list(raw: dict[str, Any], key: str, default: list[str]) -> list[str]:
    value = raw.get(key, default)
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{key} must be an array of strings")
    return list(value)


def _positive_number(raw: dict[str, Any], key: str, default: float) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{key} must be a positive number")
    return value


def config_from_dict(raw: dict[str, Any]) -> ReviConfig:
    if not isinstance(raw, dict):
        raise ConfigError("config must be a JSON object")
    defaults = ReviConfig()

    default_base = raw.get("defaultBase")
    if default_base is not None and not isinstance(default_base, str):
        raise ConfigError("defaultBase must be a string")
    diff_mode = raw.get("defaultDiffMode", defaults.default_diff_mode)
    if diff_mode not in DIFF_MODES:
        raise ConfigError(f"defaultDiffMode must be one of {', '.join(DIFF_MODES)}")

    return ReviConfig(
        default_base=default_base,
        default_diff_mode=diff_mode,
        exclude=_string_list(raw, "exclude", defaults.exclude),
        danger_zone=_string_list(raw, "dangerZone", defaults.danger_zone),
        save_debounce_ms=int(_positive_number(raw, "saveDebounceMs", defaults.save_debounce_ms)),
        diff_cache_size=int(_positive_number(raw, "diffCacheSize", defaults.diff_cache_size)),
        git_timeout_seconds=float(_positive_number(raw, "gitTimeoutSeconds", defaults.git_timeout_seconds)),
    )


def config_path(repo_root: Path) -> Path:
    return repo_root / ".revi" / CONFIG_FILE_NAME


def load_config(repo_root: Path) -> ReviConfig:
    path = config_path(repo_root)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return ReviConfig()
    except json.JSONDecodeError as error:
        raise ConfigError(f"Invalid JSON in {path}: {error}") from error
    except OSError as error:
        raise ConfigError(f"Cannot read {path}: {error}") from error
    return config_from_dict(raw)
