"""Runtime settings loaded from the environment."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional, TypeVar

import appdirs

ENV_PREFIX = "SANDBOX_PROVISIONER_"
APP_NAME = "sandbox-provisioner"

T = TypeVar("T")


def default_cache_dir() -> Path:
    return Path(appdirs.user_cache_dir(APP_NAME)) / "mounts"


@dataclass(frozen=True)
class Settings:
    cache_dir: Path
    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    command_retries: int = 0
    download_timeout: float = 300.0
    log_level: str = "INFO"

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)


def _read(
    environ: Mapping[str, str], name: str, parse: Callable[[str], T], default: T
) -> T:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return parse(raw)
    except ValueError as e:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name}: {raw!r}") from e


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value < 1:
        raise ValueError("must be at least 1")
    return value


def _non_negative_int(raw: str) -> int:
    value = int(raw)
    if value < 0:
        raise ValueError("must not be negative")
    return value


def _non_negative_float(raw: str) -> float:
    value = float(raw)
    if value < 0:
        raise ValueError("must not be negative")
    return value


def _log_level(raw: str) -> str:
    level = raw.upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ValueError("unknown log level")
    return level


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from ``SANDBOX_PROVISIONER_*`` environment variables."""
    environ = os.environ if environ is None else environ
    return Settings(
        cache_dir=_read(environ, "CACHE_DIR", lambda v: Path(v).expanduser(), default_cache_dir()),
        max_attempts=_read(environ, "MAX_ATTEMPTS", _positive_int, 3),
        backoff_base=_read(environ, "BACKOFF_BASE", _non_negative_float, 0.5),
        backoff_max=_read(environ, "BACKOFF_MAX", _non_negative_float, 8.0),
        command_retries=_read(environ, "COMMAND_RETRIES", _non_negative_int, 0),
        download_timeout=_read(environ, "DOWNLOAD_TIMEOUT", _non_negative_float, 300.0),
        log_level=_read(environ, "LOG_LEVEL", _log_level, "INFO"),
    )
