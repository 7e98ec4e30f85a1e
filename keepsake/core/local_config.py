"""
Local Configuration - live view of the data root's config.yml and signing secret

config.yml holds the login identity (username/password). The JWT signing
secret lives next to it in .jwt_secret. Both are protected from backup
export and import, so a restore never changes who can log in.
"""
import logging
import os
import secrets
import threading
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ValidationError

from keepsake.config import settings
from keepsake.core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_USERNAME = "admin"


class LocalConfig(BaseModel):
    username: str = DEFAULT_USERNAME
    password: str = ""


def _generate_secret() -> str:
    return secrets.token_urlsafe(48)


class ConfigState:
    """Thread-safe holder for the current local config and signing secret."""

    def __init__(self, config_path: Path, secret_path: Path):
        self.config_path = Path(config_path)
        self.secret_path = Path(secret_path)
        self._lock = threading.Lock()
        self._config: Optional[LocalConfig] = None
        self._secret: Optional[str] = None

    def _read_config(self) -> LocalConfig:
        if not self.config_path.exists():
            return LocalConfig()
        try:
            raw = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read {self.config_path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"{self.config_path} must contain a mapping")
        try:
            return LocalConfig(**raw)
        except ValidationError as e:
            raise ConfigError(f"Invalid {self.config_path}: {e}") from e

    def _write_secret(self, secret: str) -> None:
        self.secret_path.parent.mkdir(parents=True, exist_ok=True)
        self.secret_path.write_text(secret, encoding="utf-8")
        try:
            os.chmod(self.secret_path, 0o600)
        except OSError as e:
            logger.warning(f"Could not restrict permissions on {self.secret_path}: {e}")

    def _read_or_create_secret(self) -> str:
        if self.secret_path.exists():
            secret = self.secret_path.read_text(encoding="utf-8").strip()
            if secret:
                return secret
        secret = _generate_secret()
        self._write_secret(secret)
        return secret

    def load(self) -> LocalConfig:
        """Load config.yml and the existing signing secret (created if missing)."""
        config = self._read_config()
        with self._lock:
            self._config = config
            self._secret = self._read_or_create_secret()
        return config

    def reload(self) -> LocalConfig:
        """Re-read config.yml and rotate the signing secret.

        Every token issued before the reload stops verifying.
        """
        config = self._read_config()
        secret = _generate_secret()
        with self._lock:
            self._write_secret(secret)
            self._config = config
            self._secret = secret
        logger.info("Local config reloaded, signing secret rotated")
        return config

    def get(self) -> Optional[LocalConfig]:
        with self._lock:
            return self._config

    def get_jwt_secret(self) -> str:
        with self._lock:
            if self._secret is None:
                raise ConfigError("Signing secret not loaded")
            return self._secret

    @property
    def auth_enabled(self) -> bool:
        config = self.get()
        return bool(config and config.password)


# Global instance
config_state = ConfigState(settings.config_path, settings.secret_path)


def get_config_state() -> ConfigState:
    """FastAPI dependency for the live local config."""
    return config_state
