from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional
import yaml


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres@localhost:5432/ridematch"
    REDIS_URL: str = "redis://localhost:6379/0"

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = -1
    DB_ECHO: bool = False

    # offer negotiation
    OFFER_TTL_SEC: int = 15
    OFFER_POLL_INTERVAL_SEC: float = 1.0
    OFFER_POLL_TICKS: int = 15
    MATCH_MAX_ROUNDS: int = 5

    # ride request guards
    RATE_LIMIT_MAX_REQUESTS: int = 3
    RATE_LIMIT_WINDOW_MIN: int = 10

    # fares
    FARE_BASE: float = 5.0
    FARE_PER_KM: float = 2.0
    FARE_PER_MIN: float = 0.5
    AVERAGE_SPEED_KMH: float = 30.0
    MIN_ETA_MIN: int = 5

    # geocoding
    MAPBOX_ACCESS_TOKEN: str = ""
    MAPBOX_BASE_URL: str = "https://api.mapbox.com"
    GEO_TIMEOUT_SEC: float = 10.0
    FALLBACK_LAT: float = 33.5731
    FALLBACK_LON: float = -7.5898

    # Load .env located next to this file (ridematch/.env) so defaults are overridden
    model_config = {"env_file": str(Path(__file__).resolve().parent / ".env"), "extra": "ignore"}


# yaml section -> {yaml key: settings field}
_YAML_FIELDS = {
    "database": {
        "url": "DATABASE_URL",
        "pool_size": "DB_POOL_SIZE",
        "max_overflow": "DB_MAX_OVERFLOW",
        "pool_timeout": "DB_POOL_TIMEOUT",
        "pool_recycle": "DB_POOL_RECYCLE",
        "echo": "DB_ECHO",
    },
    "redis": {"url": "REDIS_URL"},
    "matching": {
        "offer_ttl_sec": "OFFER_TTL_SEC",
        "poll_interval_sec": "OFFER_POLL_INTERVAL_SEC",
        "poll_ticks": "OFFER_POLL_TICKS",
        "max_rounds": "MATCH_MAX_ROUNDS",
    },
    "rides": {
        "rate_limit_max_requests": "RATE_LIMIT_MAX_REQUESTS",
        "rate_limit_window_min": "RATE_LIMIT_WINDOW_MIN",
    },
    "fares": {
        "base": "FARE_BASE",
        "per_km": "FARE_PER_KM",
        "per_min": "FARE_PER_MIN",
        "average_speed_kmh": "AVERAGE_SPEED_KMH",
        "min_eta_min": "MIN_ETA_MIN",
    },
    "geo": {
        "mapbox_access_token": "MAPBOX_ACCESS_TOKEN",
        "mapbox_base_url": "MAPBOX_BASE_URL",
        "timeout_sec": "GEO_TIMEOUT_SEC",
        "fallback_lat": "FALLBACK_LAT",
        "fallback_lon": "FALLBACK_LON",
    },
}


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Load settings from application.yaml and merge them over the defaults."""
    if config_path is None:
        config_path = Path(__file__).resolve().parent / "application.yaml"

    config_dict = {}

    if config_path.exists():
        with open(config_path, "r") as f:
            yaml_config = yaml.safe_load(f)
        if yaml_config:
            for section, fields in _YAML_FIELDS.items():
                values = yaml_config.get(section) or {}
                for key, field in fields.items():
                    config_dict[field] = values.get(key)

    return Settings(**{k: v for k, v in config_dict.items() if v is not None})


settings = load_settings()
