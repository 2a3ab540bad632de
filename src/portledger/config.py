from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = Field(default="sqlite:///./portledger.db")
    log_level: str = Field(default="INFO")
    sweep_size: int = Field(default=65535, ge=1, le=65535)
    stream_interval_seconds: float = Field(default=1.0, ge=1.0, le=60.0)
    stream_keepalive_seconds: float = Field(default=10.0, ge=1.0)
    stream_disconnect_poll_seconds: float = Field(default=0.1, gt=0, le=1.0)
    stream_read_retries: int = Field(default=3, ge=0, le=10)
    stream_retry_backoff_seconds: float = Field(default=0.25, ge=0)
    sweep_timer_enabled: bool = Field(default=True)
    sweep_tick_seconds: float = Field(default=10.0, ge=1.0)
    agent_heartbeat_path: Path = Field(default=Path("/data/agent_heartbeat.json"))
    agent_heartbeat_ttl_seconds: int = Field(default=30, ge=1)


settings = Settings()
