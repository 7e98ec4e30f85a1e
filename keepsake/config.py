"""Configuration management for Keepsake."""
import os
from pathlib import Path
from functools import lru_cache
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file into os.environ at startup
# Priority: data/.env (desktop/docker volume) > ./.env (local dev fallback)
_data_env = Path(os.environ.get("DATA_DIR", "./data")) / ".env"
if _data_env.exists():
    load_dotenv(_data_env, override=True)
else:
    load_dotenv(override=True)

_env_file = str(_data_env) if _data_env.exists() else ".env"


class Settings(BaseSettings):
    """Application settings"""
    model_config = SettingsConfigDict(env_file=_env_file, extra="ignore")

    # API Server
    host: str = "127.0.0.1"
    port: int = 9696
    debug: bool = False

    # Data root (DATA_DIR env var). Everything under it is the unit of backup.
    data_dir: str = "./data"

    # Database lives inside the data root so it travels with backups
    database_filename: str = "keepsake.db"
    database_echo: bool = False  # Log SQL statements

    # Protected entries (never exported, never wiped or overwritten on import)
    config_filename: str = "config.yml"
    secret_filename: str = ".jwt_secret"
    staging_dirname: str = "temp"

    # Backup export
    backup_filename_prefix: str = "keepsake_backup"
    backup_compress: bool = False
    backup_pipe_capacity: int = 4 * 1024 * 1024  # 4MB
    backup_write_buffer: int = 4 * 1024 * 1024  # 4MB, matches the pipe
    backup_chunk_size: int = 64 * 1024

    # Backup import
    max_upload_size: int = 2 * 1024 * 1024 * 1024  # 2GB
    restore_max_workers: int = 2  # blocking restore steps; exports use their own threads

    # Staging directory reaper
    staging_max_age_hours: int = 24

    # Session tokens
    token_expire_days: int = 90

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).resolve()

    @property
    def database_path(self) -> Path:
        return self.data_path / self.database_filename

    @property
    def database_url(self) -> str:
        """SQLAlchemy async URL for the database file inside the data root."""
        return f"sqlite+aiosqlite:///{self.database_path}"

    @property
    def config_path(self) -> Path:
        return self.data_path / self.config_filename

    @property
    def secret_path(self) -> Path:
        return self.data_path / self.secret_filename

    @property
    def staging_path(self) -> Path:
        return self.data_path / self.staging_dirname

    @property
    def protected_names(self) -> frozenset[str]:
        """Base names excluded from export and from destructive import steps."""
        return frozenset({self.config_filename, self.secret_filename, self.staging_dirname})


@lru_cache()
def get_settings() -> Settings:
    return Settings()


# Module-level settings instance for convenience
settings = get_settings()
