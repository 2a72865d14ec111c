"""Configuration management for Loopwork"""

import yaml
from pathlib import Path
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_data_dir() -> Path:
    return Path.home() / ".loopwork"


def get_config_path() -> Path:
    """Return the path to config.yaml used for both loading and saving."""
    return get_data_dir() / "config.yaml"


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    # Application
    app_name: str = "Loopwork"
    debug: bool = Field(default=False, alias="LOOPWORK_DEBUG")
    data_dir: str = Field(default=str(get_data_dir()), alias="LOOPWORK_DATA_DIR")

    # Storage / IPC
    database_path: Optional[str] = Field(default=None, alias="LOOPWORK_DATABASE_PATH")
    ipc_socket_path: Optional[str] = Field(default=None, alias="LOOPWORK_IPC_SOCKET")

    # Agent execution endpoint
    agent_url: str = Field(default="http://127.0.0.1:18791", alias="LOOPWORK_AGENT_URL")
    agent_timeout_seconds: float = Field(default=0, alias="LOOPWORK_AGENT_TIMEOUT")  # 0 = no limit

    # Loop triggers
    loop_api_timeout_ms: int = Field(default=10000, alias="LOOPWORK_API_TIMEOUT_MS")
    loop_file_settle_seconds: float = Field(default=0.2, alias="LOOPWORK_FILE_SETTLE_SECONDS")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")
    log_file: Optional[str] = Field(default=None, alias="LOG_FILE")

    @property
    def resolved_database_path(self) -> str:
        return self.database_path or str(Path(self.data_dir).expanduser() / "threads.db")

    @property
    def resolved_socket_path(self) -> str:
        return self.ipc_socket_path or str(Path(self.data_dir).expanduser() / "daemon.sock")

    @classmethod
    def from_file(cls, path: str) -> "Settings":
        """Load settings from YAML file"""
        with open(path, "r") as f:
            config = yaml.safe_load(f) or {}
        return cls(**config)

    def to_file(self, path: str):
        """Save settings to YAML file. Creates parent directory if needed."""
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with open(p, "w") as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False)
