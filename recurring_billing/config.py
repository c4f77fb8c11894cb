"""Configuration management - loads billing.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from recurring_billing.models import BillingConfig


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Application configuration loader and manager.

    Loads billing.yaml and provides validated access to:
    - Billing state machine settings
    - Pub/Sub configuration
    - Ledger seed balances
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to billing.yaml file. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/billing.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._billing_config: Optional[BillingConfig] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/billing.yaml")

    def _load_config(self) -> None:
        """Load and validate billing.yaml configuration."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/billing.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")

        try:
            self._billing_config = BillingConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    @property
    def settings(self) -> BillingConfig:
        """Get validated billing configuration."""
        if self._billing_config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._billing_config

    @property
    def config_path(self) -> Path:
        return self._config_path

    @property
    def authorization_mode(self) -> str:
        """Get the pause/resume/cancel authorization mode ("or" or "strict")."""
        return self.settings.billing.authorization_mode

    @property
    def events_enabled(self) -> bool:
        return self.settings.billing.events_enabled

    @property
    def event_backend(self) -> str:
        return self.settings.billing.event_backend

    @property
    def pubsub_project_id(self) -> str:
        """Get Pub/Sub project ID.

        Returns:
            Pub/Sub project ID (e.g., "billing-local")
        """
        return self.settings.pubsub.project_id

    @property
    def pubsub_topic(self) -> str:
        """Get Pub/Sub topic name.

        Returns:
            Pub/Sub topic name (e.g., "subscription-events")
        """
        return self.settings.pubsub.topic

    @property
    def pubsub_publish_timeout(self) -> float:
        return self.settings.pubsub.publish_timeout_seconds

    @property
    def ledger_settings(self):
        """Get in-memory ledger seed settings."""
        return self.settings.ledger

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)

    Returns:
        Config instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Reload global configuration from disk."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()
