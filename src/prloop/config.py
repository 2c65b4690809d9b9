"""Configuration for pr-loop.

Loads ``.pr-loop.toml`` from the project root (walking up to ``.git``),
applies ``PR_LOOP_*`` / ``CIRCLECI_TOKEN`` environment overrides, validates
with Pydantic, and provides sensible defaults so zero-config still works.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".pr-loop.toml"

ENV_INCLUDE_CHECKS = "PR_LOOP_INCLUDE_CHECKS"
ENV_EXCLUDE_CHECKS = "PR_LOOP_EXCLUDE_CHECKS"
ENV_CIRCLECI_TOKEN = "CIRCLECI_TOKEN"  # noqa: S105


class ChecksConfig(BaseModel):
    """Which CI checks take part in the decision."""

    model_config = ConfigDict(extra="ignore")

    include: list[str] = Field(default_factory=list, description="Glob patterns of checks to include (empty = all)")
    exclude: list[str] = Field(default_factory=list, description="Glob patterns of checks to exclude")


class WaitConfig(BaseModel):
    """Polling policy for the wait modes."""

    model_config = ConfigDict(extra="ignore")

    timeout: int = Field(default=1800, ge=0, description="Maximum seconds to wait")
    poll_interval: int = Field(default=5, gt=0, description="Seconds between polls")
    min_wait_after_push: int = Field(
        default=30,
        ge=0,
        description="Seconds after the last commit before a quiet PR is trusted as happy",
    )


class CleanupConfig(BaseModel):
    """Batch comment mutation settings."""

    model_config = ConfigDict(extra="ignore")

    max_concurrent: int = Field(default=10, gt=0, description="Comment mutations run in parallel per chunk")


class CircleCiConfig(BaseModel):
    """CircleCI log correlation settings."""

    model_config = ConfigDict(extra="ignore")

    token: str | None = Field(default=None, description="CircleCI personal API token; logs are skipped without it")


class Config(BaseModel):
    """Top-level pr-loop configuration."""

    model_config = ConfigDict(extra="ignore")

    checks: ChecksConfig = Field(default_factory=ChecksConfig, description="Check filtering")
    wait: WaitConfig = Field(default_factory=WaitConfig, description="Wait-loop policy")
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig, description="Comment cleanup settings")
    circleci: CircleCiConfig = Field(default_factory=CircleCiConfig, description="CircleCI settings")


def _split_env_list(value: str) -> list[str]:
    """Split a comma-delimited env value, dropping blanks."""
    return [item.strip() for item in value.split(",") if item.strip()]


def _apply_env_overrides(data: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    """Overlay environment variables on top of the file data."""
    if environ.get(ENV_INCLUDE_CHECKS) is not None:
        data.setdefault("checks", {})["include"] = _split_env_list(environ[ENV_INCLUDE_CHECKS])
    if environ.get(ENV_EXCLUDE_CHECKS) is not None:
        data.setdefault("checks", {})["exclude"] = _split_env_list(environ[ENV_EXCLUDE_CHECKS])
    token = environ.get(ENV_CIRCLECI_TOKEN)
    if token:
        data.setdefault("circleci", {})["token"] = token
    return data


def _find_config_file(start: Path) -> Path | None:
    """Walk up from *start* looking for ``.pr-loop.toml``, stopping at ``.git`` root."""
    current = start.resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        # Stop at filesystem root
        if current.parent == current:
            return None
        # Stop if we just checked a directory that contains .git
        if (current / ".git").exists():
            return None
        current = current.parent


def load_config(cwd: str | Path | None = None, environ: dict[str, str] | None = None) -> tuple[Config, Path | None]:
    """Load configuration from ``.pr-loop.toml`` and the environment.

    Walks up from *cwd* (defaulting to the current directory) looking for the
    config file.  If not found, file-level settings fall back to defaults.

    Returns:
        (config, config_path): the parsed config and the file path (or None
        if no config file was found).

    Raises ``ValueError`` on invalid TOML or validation errors.
    """
    start = Path(cwd) if cwd else Path.cwd()
    config_path = _find_config_file(start)
    environ = dict(os.environ) if environ is None else environ

    data: dict[str, Any] = {}
    if config_path is None:
        logger.debug("No %s found, using defaults", CONFIG_FILENAME)
    else:
        logger.debug("Loading config from %s", config_path)
        try:
            data = tomllib.loads(config_path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            msg = f"Invalid TOML in {config_path}: {exc}"
            raise ValueError(msg) from exc

    data = _apply_env_overrides(data, environ)
    try:
        config = Config.model_validate(data)
    except Exception as exc:
        source = config_path or "environment"
        msg = f"Invalid config in {source}: {exc}"
        raise ValueError(msg) from exc

    return config, config_path


class _ConfigState:
    """Holds the active config."""

    __slots__ = ("config",)

    def __init__(self) -> None:
        self.config: Config = Config()


_state = _ConfigState()


def get_config() -> Config:
    """Return the active configuration."""
    return _state.config


def set_config(config: Config) -> None:
    """Set the active configuration (called at CLI or server startup)."""
    _state.config = config
