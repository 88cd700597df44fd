"""
Runtime Settings

Read from environment variables, validated once at load time.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional
import math
import os

from .core.dedupe import DedupeScope
from .persistence.database import DEFAULT_DATABASE_URL

DEFAULT_TTL_SECONDS = 24 * 60 * 60


def _parse_bool(value: str, name: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


@dataclass(frozen=True)
class MeterSettings:
    """Configuration for the metering service."""
    database_url: str = DEFAULT_DATABASE_URL
    dedupe_ttl: timedelta = timedelta(seconds=DEFAULT_TTL_SECONDS)
    dedupe_scope: DedupeScope = DedupeScope.REQUEST
    rules_path: Optional[str] = None
    api_key: str = "dev-key-change-in-production"
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MeterSettings":
        env = os.environ if environ is None else environ

        raw_ttl = env.get("METER_DEDUPE_TTL_SECONDS", str(DEFAULT_TTL_SECONDS))
        try:
            ttl_seconds = float(raw_ttl)
        except ValueError:
            raise ValueError(f"METER_DEDUPE_TTL_SECONDS must be a number, got {raw_ttl!r}")
        if not math.isfinite(ttl_seconds):
            raise ValueError(f"METER_DEDUPE_TTL_SECONDS must be finite, got {raw_ttl!r}")
        try:
            dedupe_ttl = timedelta(seconds=ttl_seconds)
        except OverflowError:
            raise ValueError(f"METER_DEDUPE_TTL_SECONDS is out of range: {raw_ttl!r}")

        raw_scope = env.get("METER_DEDUPE_SCOPE", DedupeScope.REQUEST.value)
        try:
            scope = DedupeScope(raw_scope.strip().lower())
        except ValueError:
            valid = [s.value for s in DedupeScope]
            raise ValueError(f"METER_DEDUPE_SCOPE must be one of: {valid}")

        log_level = env.get("LOG_LEVEL", "INFO").upper()
        if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"LOG_LEVEL is not a valid level: {log_level}")

        return cls(
            database_url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            dedupe_ttl=dedupe_ttl,
            dedupe_scope=scope,
            rules_path=env.get("METER_RULES_PATH") or None,
            api_key=env.get("API_KEY", "dev-key-change-in-production"),
            log_level=log_level,
            log_json=_parse_bool(env.get("LOG_JSON", "true"), "LOG_JSON"),
        )
