"""
Store configuration loaded from the environment.

All settings read ``OBSPINE_*`` environment variables, then an optional
``.env`` file, then the defaults below.

Examples:
    >>> import os
    >>> os.environ["OBSPINE_MAX_FIELD_BY_TABLE"] = "4"
    >>> clear_settings_cache()
    >>> get_settings().max_field_by_table
    4

Tags:
    configuration, pydantic-settings, obspine
"""

from __future__ import annotations

from pydantic import Field, ValidationError as PydanticValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from obspine.core.errors import ConfigError


class ObsSpineSettings(BaseSettings):
    """Validated settings for an observation store."""

    model_config = SettingsConfigDict(
        env_prefix="OBSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Database ─────────────────────────────────────────────────
    database_url: str = Field(default="sqlite:///obspine.db")
    database_echo: bool = Field(default=False)

    # ── Allocation ───────────────────────────────────────────────
    max_field_by_table: int = Field(
        default=10,
        description="Column budget of one physical measure table (sub-field columns included)",
    )

    # ── Identifiers ──────────────────────────────────────────────
    sensor_id_base: str = Field(default="urn:ogc:object:sensor:GEOM:")
    observation_id_base: str = Field(default="urn:ogc:object:observation:GEOM:")
    observation_template_id_base: str = Field(default="urn:ogc:object:observation:template:GEOM:")
    phenomenon_id_base: str = Field(default="urn:ogc:def:phenomenon:GEOM:")

    # ── Geometry ─────────────────────────────────────────────────
    default_srid: int = Field(default=4326)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @field_validator("max_field_by_table")
    @classmethod
    def _positive_budget(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_field_by_table must be at least 1")
        return value

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        if value not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")
        return value


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, ObsSpineSettings] = {}


def get_settings(**overrides: object) -> ObsSpineSettings:
    """Load, validate, and cache the settings.

    Keyword overrides bypass the cache and return a fresh instance.
    """
    if overrides:
        return _build(**overrides)
    if "default" not in _settings_cache:
        _settings_cache["default"] = _build()
    return _settings_cache["default"]


def clear_settings_cache() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    _settings_cache.clear()


def _build(**overrides: object) -> ObsSpineSettings:
    try:
        return ObsSpineSettings(**overrides)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid obspine settings: {exc}", cause=exc) from exc


__all__ = ["ObsSpineSettings", "get_settings", "clear_settings_cache"]
