"""
Runtime Configuration

Settings are read from environment variables once per process. A local
.env file, if present, is loaded into the environment first.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

DB_DIR = Path(__file__).parent / "ingest" / "data"
DB_PATH = DB_DIR / "nudgecast.db"


@dataclass(frozen=True)
class Settings:
    """Process-wide settings."""
    database_url: str
    dev_mode: bool
    log_level: str
    forecast_ttl_hours: int
    openai_api_key: Optional[str]
    narrative_model: str
    cors_origins: List[str]
    api_host: str
    api_port: int


def load_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings(
        database_url=os.environ.get("NUDGECAST_DATABASE_URL", f"sqlite:///{DB_PATH}"),
        dev_mode=os.environ.get("NUDGECAST_DEV_MODE") == "1",
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        forecast_ttl_hours=int(os.environ.get("NUDGECAST_FORECAST_TTL_HOURS", "6")),
        openai_api_key=os.environ.get("OPENAI_API_KEY") or None,
        narrative_model=os.environ.get("NUDGECAST_NARRATIVE_MODEL", "gpt-4o-mini"),
        cors_origins=[o.strip() for o in os.environ.get("NUDGECAST_CORS_ORIGINS", "*").split(",") if o.strip()],
        api_host=os.environ.get("NUDGECAST_API_HOST", "0.0.0.0"),
        api_port=int(os.environ.get("NUDGECAST_API_PORT", "8000")),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
