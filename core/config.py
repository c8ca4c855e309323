"""
Configuration - project settings management.
"""
import json
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseModel):
    url: Optional[str] = None
    max_connections: int = 10
    namespace: str = "peerlink"


class BrokerSettings(BaseModel):
    # auto -> redis (if REDIS__URL) else inmemory
    provider: str = "auto"
    # How often the redis hub checks liveness channels of known connections
    presence_sweep_interval_s: float = 5.0
    # Upper bound for waiting on registered connections during shutdown
    drain_timeout_s: float = 10.0
    queue_max: int = 1000


class TransportSettings(BaseModel):
    ice_servers: list[str] = Field(default_factory=list)
    ice_username: Optional[str] = None
    ice_credential: Optional[str] = None
    data_channel_label: str = "chat"

    @field_validator("ice_servers", mode="before")
    @classmethod
    def _parse_ice_servers(cls, v):
        """Accept a JSON list string or a comma-separated string."""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("[") and s.endswith("]"):
                try:
                    arr = json.loads(s)
                except ValueError:
                    arr = None
                if isinstance(arr, list):
                    return arr
            return [item.strip() for item in s.split(",") if item.strip()]
        return v


class ClientSettings(BaseModel):
    # The broker answers every registration; no ack within this window means failure
    register_timeout_s: float = 4.0


class Settings(BaseSettings):
    """Project settings."""

    PROJECT_NAME: str = Field(default="peerlink-signaling")
    VERSION: str = Field(default="0.1.0")
    DEBUG: bool = Field(default=False)
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: Optional[str] = Field(default=None, description="Overrides the DEBUG-derived level")

    redis: RedisSettings = Field(default_factory=RedisSettings)
    broker: BrokerSettings = Field(default_factory=BrokerSettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)
    client: ClientSettings = Field(default_factory=ClientSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


settings = Settings()
