from __future__ import annotations

import ipaddress
import os
from pathlib import Path
from typing import List

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)
    """Application runtime configuration."""

    app_name: str = "LoipenTrack"
    environment: str = "development"
    host: str = os.getenv("LT_HOST", "127.0.0.1")
    port: int = int(os.getenv("LT_PORT", "8080"))
    log_level: str = os.getenv("LT_LOG_LEVEL", "INFO")
    block_ips: List[str] = Field(
        default_factory=lambda: [ip.strip() for ip in os.getenv("LT_BLOCK_IPS", "").split(",") if ip.strip()]
    )
    behind_proxy: bool = os.getenv("LT_BEHIND_PROXY", "false").lower() == "true"

    sqlite_path: Path = Path(os.getenv("LT_SQLITE_PATH", "./data/loipentrack.db"))

    timezone: str = os.getenv("TZ", "Europe/Zurich")

    # Persist pause/resume bookkeeping so a restart does not overcount elapsed time
    pause_checkpoints: bool = os.getenv("LT_PAUSE_CHECKPOINTS", "true").lower() == "true"

    first_season_year: int = int(os.getenv("LT_FIRST_SEASON_YEAR", "2020"))
    recent_entries_limit: int = int(os.getenv("LT_RECENT_ENTRIES", "20"))

    @field_validator("block_ips", mode="before")
    @classmethod
    def _split_block_ips(cls, value: str | List[str]) -> List[str]:
        if isinstance(value, list):
            return value
        if not value:
            return []
        return [ip.strip() for ip in value.split(",") if ip.strip()]

    @computed_field
    def block_networks(self) -> List[ipaddress._BaseNetwork]:
        networks: List[ipaddress._BaseNetwork] = []
        for entry in self.block_ips:
            try:
                networks.append(ipaddress.ip_network(entry, strict=False))
            except ValueError:
                # Single IPs fallback
                networks.append(ipaddress.ip_network(f"{entry}/32", strict=False))
        return networks


settings = Settings()

settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
