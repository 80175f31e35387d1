import logging
import os
from dataclasses import dataclass
from datetime import timezone, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_SHELL_ASSETS = ("/", "/favicon.ico", "/logo.svg", "/manifest.json")


@dataclass(frozen=True)
class Settings:
    api_base_url: str
    api_token: str | None
    origin_url: str
    redis_url: str | None
    redis_prefix: str
    queue_key: str
    queue_file: str
    cache_version: str
    shell_assets: tuple[str, ...]
    request_timeout: float
    start_online: bool
    sync_notice_seconds: float
    log_level: str
    tz: str


def _parse_assets(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return DEFAULT_SHELL_ASSETS
    assets = tuple(part.strip() for part in raw.split(",") if part.strip())
    return assets or DEFAULT_SHELL_ASSETS


def resolve_timezone(name: str | None) -> tzinfo:
    """Zone used to bucket dashboard days. Unknown names fall back to UTC."""
    name = (name or "").strip().lstrip(":")
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown TZ %r, bucketing dashboard days in UTC", name)
        return timezone.utc


def load_settings() -> Settings:
    api_base_url = (os.getenv("API_BASE_URL") or "").strip().rstrip("/")
    if not api_base_url:
        raise RuntimeError("API_BASE_URL is required")

    default_queue_file = str(Path.home() / ".budgetsync" / "queue.json")

    return Settings(
        api_base_url=api_base_url,
        api_token=(os.getenv("API_TOKEN") or "").strip() or None,
        origin_url=(os.getenv("ORIGIN_URL") or "").strip().rstrip("/") or api_base_url,
        redis_url=(os.getenv("REDIS_URL") or "").strip() or None,
        redis_prefix=(os.getenv("REDIS_PREFIX") or "budget").strip() or "budget",
        queue_key=(os.getenv("QUEUE_KEY") or "budget-offline-queue").strip() or "budget-offline-queue",
        queue_file=(os.getenv("QUEUE_FILE") or default_queue_file).strip() or default_queue_file,
        cache_version=(os.getenv("CACHE_VERSION") or "budget-cache-v1").strip() or "budget-cache-v1",
        shell_assets=_parse_assets(os.getenv("SHELL_ASSETS")),
        request_timeout=max(1.0, float(os.getenv("REQUEST_TIMEOUT", "10"))),
        start_online=os.getenv("START_ONLINE", "true").lower() == "true",
        sync_notice_seconds=max(0.0, float(os.getenv("SYNC_NOTICE_SECONDS", "3.2"))),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        tz=(os.getenv("TZ") or "UTC").strip() or "UTC",
    )


def configure_logging(level: str = "INFO") -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
    logging.getLogger("budgetsync").setLevel(getattr(logging, level, logging.INFO))


settings = load_settings()
