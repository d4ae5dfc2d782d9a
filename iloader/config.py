"""
Configuration management for iloader.

Handles loading, saving, and accessing configuration values from
environment variables, config files, and default values.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from iloader.constants import (
    ANISETTE_CACHE_TTL,
    ANISETTE_TIMEOUT,
    DEFAULT_ANISETTE_SERVER,
    DEFAULT_CONFIG_DIR,
    DEFAULT_CONFIG_FILE,
    DEFAULT_OUTPUT_DIR,
    DEVELOPER_CLIENT_ID,
    DEVELOPER_PROTOCOL_VERSION,
    DEVELOPER_SERVICES_URL,
    DEVELOPER_TIMEOUT,
    DOWNLOAD_TIMEOUT,
    GSA_ACCEPT_LANGUAGE,
    GSA_TIMEOUT,
    GSA_URL,
    GSA_USER_AGENT,
    LIVECONTAINER_IPA_URL,
    SIDESTORE_IPA_URL,
)

logger = logging.getLogger(__name__)


@dataclass
class AnisetteConfig:
    """Configuration for the Anisette header provider."""

    server: str = DEFAULT_ANISETTE_SERVER
    timeout: int = ANISETTE_TIMEOUT
    cache_ttl: int = ANISETTE_CACHE_TTL


@dataclass
class AppleConfig:
    """Configuration for Apple's authentication and developer endpoints."""

    gsa_url: str = GSA_URL
    developer_services_url: str = DEVELOPER_SERVICES_URL
    client_id: str = DEVELOPER_CLIENT_ID
    protocol_version: str = DEVELOPER_PROTOCOL_VERSION
    timeout: int = GSA_TIMEOUT
    developer_timeout: int = DEVELOPER_TIMEOUT
    user_agent: str = GSA_USER_AGENT
    locale: str = GSA_ACCEPT_LANGUAGE


@dataclass
class ReleasesConfig:
    """Where the built-in installers download their apps."""

    sidestore_url: str = SIDESTORE_IPA_URL
    livecontainer_url: str = LIVECONTAINER_IPA_URL
    timeout: int = DOWNLOAD_TIMEOUT


@dataclass
class PolicyConfig:
    """User-controlled policy switches."""

    allow_app_id_deletion: bool = False


@dataclass
class Config:
    """
    Main configuration container for iloader.

    Configuration is loaded from (in order of precedence):
    1. Environment variables (ILOADER_*)
    2. Config file (~/.iloader/config.json)
    3. Default values

    Example:
        config = Config.load()
        print(config.anisette.server)

        # Or with custom config file
        config = Config.load(Path("/custom/config.json"))
    """

    # Directory paths
    config_dir: Path = field(default_factory=lambda: DEFAULT_CONFIG_DIR)
    output_dir: Path = field(default_factory=lambda: DEFAULT_OUTPUT_DIR)
    work_dir: Optional[Path] = None

    # Sub-configurations
    anisette: AnisetteConfig = field(default_factory=AnisetteConfig)
    apple: AppleConfig = field(default_factory=AppleConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    releases: ReleasesConfig = field(default_factory=ReleasesConfig)

    # Logging
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Ensure paths are Path objects."""
        self.config_dir = Path(self.config_dir)
        self.output_dir = Path(self.output_dir)
        if self.work_dir is not None:
            self.work_dir = Path(self.work_dir)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> Config:
        """
        Load configuration from file and environment.

        Args:
            config_path: Optional path to config file. If not provided,
                        uses default location (~/.iloader/config.json).

        Returns:
            Config instance with loaded values.
        """
        # Load environment variables from .env file if present
        load_dotenv()

        config_path = config_path or DEFAULT_CONFIG_FILE
        config_data: dict[str, Any] = {}

        if config_path.exists():
            try:
                with open(config_path) as f:
                    config_data = json.load(f)
                logger.debug(f"Loaded config from {config_path}")
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Failed to load config from {config_path}: {e}")

        config_data = cls._apply_env_overrides(config_data)

        return cls._from_dict(config_data)

    @classmethod
    def _apply_env_overrides(cls, config_data: dict[str, Any]) -> dict[str, Any]:
        """Apply environment variable overrides to config data."""
        env_mappings = {
            "ILOADER_CONFIG_DIR": "config_dir",
            "ILOADER_OUTPUT_DIR": "output_dir",
            "ILOADER_WORK_DIR": "work_dir",
            "ILOADER_LOG_LEVEL": "log_level",
            "ILOADER_ANISETTE_SERVER": ("anisette", "server"),
            "ILOADER_ANISETTE_TIMEOUT": ("anisette", "timeout"),
            "ILOADER_GSA_URL": ("apple", "gsa_url"),
            "ILOADER_DEVELOPER_URL": ("apple", "developer_services_url"),
            "ILOADER_TIMEOUT": ("apple", "timeout"),
            "ILOADER_ALLOW_APP_ID_DELETION": ("policy", "allow_app_id_deletion"),
            "ILOADER_SIDESTORE_URL": ("releases", "sidestore_url"),
            "ILOADER_LIVECONTAINER_URL": ("releases", "livecontainer_url"),
        }

        for env_var, config_key in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                if isinstance(config_key, tuple):
                    section, key = config_key
                    if section not in config_data:
                        config_data[section] = {}
                    config_data[section][key] = cls._parse_env_value(value)
                else:
                    config_data[config_key] = cls._parse_env_value(value)

        return config_data

    @staticmethod
    def _parse_env_value(value: str) -> Any:
        """Parse environment variable value to appropriate type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        return value

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> Config:
        """Create Config from dictionary."""
        anisette_data = data.pop("anisette", {})
        apple_data = data.pop("apple", {})
        policy_data = data.pop("policy", {})
        releases_data = data.pop("releases", {})

        work_dir = data.get("work_dir")

        return cls(
            config_dir=Path(data.get("config_dir", DEFAULT_CONFIG_DIR)),
            output_dir=Path(data.get("output_dir", DEFAULT_OUTPUT_DIR)),
            work_dir=Path(work_dir) if work_dir else None,
            anisette=AnisetteConfig(**anisette_data),
            apple=AppleConfig(**apple_data),
            policy=PolicyConfig(**policy_data),
            releases=ReleasesConfig(**releases_data),
            log_level=data.get("log_level", "INFO"),
        )

    def save(self, config_path: Optional[Path] = None) -> None:
        """
        Save configuration to file.

        Args:
            config_path: Optional path to save to. If not provided,
                        uses default location.
        """
        config_path = config_path or DEFAULT_CONFIG_FILE
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)

        logger.info(f"Saved config to {config_path}")

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary."""
        return {
            "config_dir": str(self.config_dir),
            "output_dir": str(self.output_dir),
            "work_dir": str(self.work_dir) if self.work_dir else None,
            "anisette": asdict(self.anisette),
            "apple": asdict(self.apple),
            "policy": asdict(self.policy),
            "releases": asdict(self.releases),
            "log_level": self.log_level,
        }

    def ensure_directories(self) -> None:
        """Create all configured directories if they don't exist."""
        for directory in [self.config_dir, self.output_dir, self.work_dir]:
            if directory is not None:
                directory.mkdir(parents=True, exist_ok=True)
