import os
from functools import lru_cache
from pathlib import Path as _Path

from pydantic import BaseModel, Field

# Load .env early so Settings defaults see it
try:
    from dotenv import load_dotenv as _load_dotenv  # type: ignore
    _load_dotenv(dotenv_path=_Path(__file__).resolve().parent.parent / ".env", override=False)
except Exception:
    pass


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _redis_pubsub_enabled_default() -> bool:
    explicit = os.getenv("REDIS_PUBSUB_ENABLED")
    if explicit is not None:
        return explicit.lower() in ("1", "true", "yes")
    return bool(os.getenv("REDIS_URL"))


class Settings(BaseModel):
    # memory | mongo
    store_backend: str = Field(default_factory=lambda: os.getenv("STORE_BACKEND", "memory").strip().lower())

    # Support multiple common env var names for Mongo connection string
    mongo_uri: str = Field(
        default_factory=lambda: (
            os.getenv("MONGO_URI")
            or os.getenv("MONGODB_URI")
            or os.getenv("MONGO_URL")
            or ""
        )
    )
    mongo_db: str = Field(default_factory=lambda: os.getenv("MONGO_DB_NAME", "solstice"))
    # Optional: provide a non-SRV fallback URI (e.g., mongodb://127.0.0.1:27017)
    mongo_alt_uri: str = Field(default_factory=lambda: os.getenv("MONGO_ALT_URI", ""))
    mongo_direct: bool = Field(default_factory=lambda: _env_flag("MONGO_DIRECT"))
    # Multi-write batches need a replica set; with this off they are refused
    mongo_transactions: bool = Field(default_factory=lambda: _env_flag("MONGO_TRANSACTIONS", "true"))
    mongo_poll_interval_seconds: float = Field(default_factory=lambda: _env_float("MONGO_POLL_INTERVAL_SECONDS", 1.0))
    mongo_server_selection_timeout_ms: int = Field(
        default_factory=lambda: int(os.getenv("MONGO_SERVER_SELECTION_TIMEOUT_MS", "3000"))
    )
    mongo_connect_timeout_ms: int = Field(default_factory=lambda: int(os.getenv("MONGO_CONNECT_TIMEOUT_MS", "3000")))
    mongo_socket_timeout_ms: int = Field(default_factory=lambda: int(os.getenv("MONGO_SOCKET_TIMEOUT_MS", "5000")))

    # Redis (pub/sub for push fan-out)
    redis_url: str = Field(default_factory=lambda: os.getenv("REDIS_URL", ""))
    redis_pubsub_enabled: bool = Field(default_factory=_redis_pubsub_enabled_default)
    redis_pubsub_prefix: str = Field(default_factory=lambda: os.getenv("REDIS_PUBSUB_PREFIX", "solstice"))

    # Sync tuning
    feed_page_size: int = Field(default_factory=lambda: int(os.getenv("FEED_PAGE_SIZE", "5")))
    candidate_limit: int = Field(default_factory=lambda: int(os.getenv("CANDIDATE_LIMIT", "50")))
    chat_list_limit: int = Field(default_factory=lambda: int(os.getenv("CHAT_LIST_LIMIT", "50")))
    typing_debounce_seconds: float = Field(default_factory=lambda: _env_float("TYPING_DEBOUNCE_SECONDS", 1.5))
    read_receipt_window_days: int = Field(default_factory=lambda: int(os.getenv("READ_RECEIPT_WINDOW_DAYS", "30")))

    # Feed ranking weights
    engagement_weight_view: float = Field(default_factory=lambda: _env_float("ENGAGEMENT_WEIGHT_VIEW", 1.0))
    engagement_weight_like: float = Field(default_factory=lambda: _env_float("ENGAGEMENT_WEIGHT_LIKE", 2.0))
    engagement_weight_comment: float = Field(default_factory=lambda: _env_float("ENGAGEMENT_WEIGHT_COMMENT", 3.0))
    engagement_weight_share: float = Field(default_factory=lambda: _env_float("ENGAGEMENT_WEIGHT_SHARE", 4.0))
    engagement_weight_recency: float = Field(default_factory=lambda: _env_float("ENGAGEMENT_WEIGHT_RECENCY", 5.0))

    # Cloudinary (message media); CLOUDINARY_URL wins over the split credentials
    cloudinary_url: str = Field(default_factory=lambda: os.getenv("CLOUDINARY_URL", ""))
    cloudinary_cloud_name: str = Field(default_factory=lambda: os.getenv("CLOUDINARY_CLOUD_NAME", ""))
    cloudinary_api_key: str = Field(default_factory=lambda: os.getenv("CLOUDINARY_API_KEY", ""))
    cloudinary_api_secret: str = Field(default_factory=lambda: os.getenv("CLOUDINARY_API_SECRET", ""))
    cloudinary_folder: str = Field(default_factory=lambda: os.getenv("CLOUDINARY_FOLDER", "solstice/messages"))

    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
