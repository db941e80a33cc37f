"""
Configuration for sharedrop

All settings can be overridden via environment variables with SHAREDROP_ prefix.
Example: SHAREDROP_MAILBOX_URL=http://192.168.1.10:8000
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Transfer settings
CHUNK_SIZE = 16 * 1024  # 16KB

DEFAULT_ICE_SERVERS = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SHAREDROP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = Field(default="INFO", description="Logging level")

    # Mailbox server
    host: str = Field(default="0.0.0.0", description="Mailbox server bind host")
    port: int = Field(default=8000, description="Mailbox server port")
    mailbox_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the mailbox server used by clients"
    )
    request_timeout: float = Field(default=10.0, gt=0, description="Mailbox HTTP timeout in seconds")
    public_url: Optional[str] = Field(
        default=None,
        description="Base URL used to build shareable room links"
    )

    # Signaling
    poll_interval: float = Field(default=2.5, gt=0, description="Seconds between mailbox polls")

    # Transport
    ice_servers: List[Dict[str, Any]] = Field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    channel_label: str = Field(default="fileTransfer")
    buffered_amount_low_threshold: int = Field(
        default=4 * CHUNK_SIZE,
        ge=0,
        description="Bytes queued on the data channel before sends wait"
    )

    # Transfers
    chunk_size: int = Field(default=CHUNK_SIZE, gt=0)
    download_dir: Path = Field(default=Path.home() / "Downloads" / "ShareDrop")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level


@lru_cache()
def get_settings() -> Settings:
    return Settings()
