from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from balena_remote_build.core.exceptions import ConfigurationError


class ClientConfig(BaseModel):
    api_url: str = "https://api.balena-cloud.com"
    base_url: str = "balena-cloud.com"
    builder_url: str | None = None
    """Explicit builder URL; overrides the one derived from ``base_url``."""
    api_version: str = "v7"
    timeout: int = Field(default=30, ge=1, le=3600)
    upload_timeout: float | None = None
    """Read timeout for the build stream. ``None`` waits for as long as the build runs."""
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    def resolve_builder_url(self) -> str:
        """Return the builder base URL.

        HTTPS is the default because registry secrets are sent inside the
        uploaded archive without any other encryption.
        """
        return self.builder_url or f"https://builder.{self.base_url}"

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Create a :class:`ClientConfig` from ``BALENARC_*`` environment variables.

        Reads the following env vars (all optional):

        * ``BALENARC_BUILDER_URL`` → ``builder_url``
        * ``BALENARC_API_URL`` → ``api_url``
        * ``BALENARC_BALENA_URL`` → ``base_url``
        * ``BALENARC_TIMEOUT`` → ``timeout`` (integer seconds, 1–3600)
        * ``BALENARC_LOG_LEVEL`` → ``log_level``
        * ``DEBUG`` → ``debug`` (any non-empty value enables it)

        Any variable that is not set or is empty is left at its default value.
        """
        kwargs: dict[str, Any] = {}

        builder_url = os.environ.get("BALENARC_BUILDER_URL")
        if builder_url:
            kwargs["builder_url"] = builder_url

        api_url = os.environ.get("BALENARC_API_URL")
        if api_url:
            kwargs["api_url"] = api_url

        base_url = os.environ.get("BALENARC_BALENA_URL")
        if base_url:
            kwargs["base_url"] = base_url

        timeout_str = os.environ.get("BALENARC_TIMEOUT")
        if timeout_str:
            try:
                kwargs["timeout"] = int(timeout_str)
            except ValueError as exc:
                raise ConfigurationError(
                    f"BALENARC_TIMEOUT must be an integer, got {timeout_str!r}"
                ) from exc

        log_level = os.environ.get("BALENARC_LOG_LEVEL")
        if log_level:
            kwargs["log_level"] = log_level

        if os.environ.get("DEBUG"):
            kwargs["debug"] = True

        return cls(**kwargs)


class BuildOptions(BaseModel):
    dockerfile_path: str = ""
    emulated: bool = False
    nocache: bool = False
    registry_secrets: dict[str, dict[str, str]] = Field(default_factory=dict)
    """Registry host → ``{"username": ..., "password": ...}``."""
    headless: bool = False
    convert_eol: bool = False
    multi_dockerignore: bool = False
    is_draft: bool = False

    model_config = {"frozen": True}


class BuildRequest(BaseModel):
    app_slug: str = Field(..., min_length=1)
    source: Path
    auth_token: str
    base_url: str
    """Builder base URL, e.g. ``ClientConfig.resolve_builder_url()``."""
    options: BuildOptions = Field(default_factory=BuildOptions)

    model_config = {"frozen": True}
