"""Layered configuration: defaults < environment (.env included) < CLI.

Each layer is a plain dict of option -> value. config_merge() folds them
together and GridletConfig.from_mapping() turns the result into the frozen
struct the engine runs on. Nothing here is read at import time.
"""

import os
from dataclasses import dataclass
from typing import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from enlighten.client import DEFAULT_BASE_URL as ENPHASE_URL_BASE
from errors import GridletError
from tomorrow.client import DEFAULT_BASE_URL as TOMORROW_URL_BASE, parse_location

ENV_PREFIX = "GRIDLET_"


class ConfigError(GridletError):
    """Missing or malformed configuration."""


def _parse_bool(key: str, val: str) -> bool:
    val = val.strip().lower()
    if val in ("true", "1", "yes"):
        return True
    if val in ("false", "0", "no", ""):
        return False
    raise ConfigError(f"{key} must be a boolean (true/false), got {val!r}")


def _parse_int(key: str, val: str) -> int:
    try:
        return int(val)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {val!r}") from None


def _parse_float(key: str, val: str) -> float:
    try:
        return float(val)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {val!r}") from None


def _parse_str(key: str, val: str) -> str:
    return val


# env var suffix -> (option name, parser)
_ENV_OPTIONS = {
    "DRY_RUN": ("dry_run", _parse_bool),
    "LOG_LEVEL": ("log_level", _parse_int),
    "LOG_QUIET": ("log_quiet", _parse_bool),
    "ENPHASE_USER": ("enphase_user", _parse_str),
    "ENPHASE_PASSWORD": ("enphase_password", _parse_str),
    "ENPHASE_URL_BASE": ("enphase_url_base", _parse_str),
    "TOMORROW_API_KEY": ("tomorrow_api_key", _parse_str),
    "TOMORROW_LOCATION": ("tomorrow_location", _parse_str),
    "TOMORROW_URL_BASE": ("tomorrow_url_base", _parse_str),
    "REQUEST_TIMEOUT": ("request_timeout_s", _parse_float),
    "TIMEZONE": ("timezone", _parse_str),
}


def config_default() -> dict:
    return {
        "dry_run": False,
        "log_level": 0,
        "log_quiet": False,
        "enphase_url_base": ENPHASE_URL_BASE,
        "tomorrow_url_base": TOMORROW_URL_BASE,
        "request_timeout_s": 10.0,
        "timezone": None,
    }


def config_from_environment(environ: Mapping[str, str] | None = None) -> dict:
    """Read GRIDLET_* variables; only variables that are set appear in the result."""
    if environ is None:
        load_dotenv()
        environ = os.environ

    cfg = {}
    for suffix, (name, parse) in _ENV_OPTIONS.items():
        key = ENV_PREFIX + suffix
        if key in environ:
            cfg[name] = parse(key, environ[key])
    return cfg


def config_merge(*configs: Mapping) -> dict:
    """Like dict.update() in order, except a None value never overwrites."""
    merged = {}
    for c in configs:
        for k, v in c.items():
            if v is None:
                continue
            merged[k] = v
    return merged


@dataclass(frozen=True)
class GridletConfig:
    enphase_user: str
    enphase_password: str
    dry_run: bool = False
    log_level: int = 0
    log_quiet: bool = False
    enphase_url_base: str = ENPHASE_URL_BASE
    tomorrow_api_key: str | None = None
    tomorrow_location: str | None = None
    tomorrow_url_base: str = TOMORROW_URL_BASE
    request_timeout_s: float = 10.0
    timezone: str | None = None

    @property
    def forecast_enabled(self) -> bool:
        return bool(self.tomorrow_api_key and self.tomorrow_location)

    @classmethod
    def from_mapping(cls, cfg: Mapping) -> "GridletConfig":
        for required in ("enphase_user", "enphase_password"):
            if not cfg.get(required):
                raise ConfigError(
                    f"Missing required option {required} "
                    f"(--{required} or {ENV_PREFIX}{required.upper()})"
                )
        if cfg.get("request_timeout_s", 10.0) <= 0:
            raise ConfigError(f"request_timeout_s must be positive, got {cfg['request_timeout_s']}")
        if cfg.get("tomorrow_location"):
            try:
                parse_location(cfg["tomorrow_location"])
            except ValueError as e:
                raise ConfigError(f"Bad tomorrow_location: {e}") from e
        if cfg.get("timezone"):
            try:
                ZoneInfo(cfg["timezone"])
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ConfigError(f"Unknown timezone {cfg['timezone']!r}") from e

        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in cfg.items() if k in known})

    def __repr__(self):
        # keep credentials out of logs
        return (
            f"GridletConfig(enphase_user={self.enphase_user!r}, dry_run={self.dry_run}, "
            f"enphase_url_base={self.enphase_url_base!r}, "
            f"forecast_enabled={self.forecast_enabled}, "
            f"tomorrow_location={self.tomorrow_location!r}, "
            f"request_timeout_s={self.request_timeout_s}, timezone={self.timezone!r})"
        )
