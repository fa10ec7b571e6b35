import os
import logging
import configparser
from pathlib import Path
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from mail_queue.api import create_app
from mail_queue.content import ContentGenerator
from mail_queue.core import MailQueueCore
from mail_queue.transport import SmtpTransport

log_level = os.getenv("MQ_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True
)


def load_settings() -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with MQ_):
      MQ_CONFIG - Path to config.ini file (default: config.ini)
      MQ_LOG_LEVEL - Logging level (default: INFO)
      MQ_DB_PATH - Database path (default: /data/mail_queue.db)
      MQ_HOST - Server host (default: 0.0.0.0)
      MQ_PORT - Server port (default: 8000)
      MQ_API_TOKEN - API authentication token
      MQ_SMTP_HOST - SMTP server; when empty every delivery fails as "not configured"
      MQ_SMTP_PORT - SMTP port (default: 25)
      MQ_SMTP_USER / MQ_SMTP_PASSWORD - SMTP credentials
      MQ_SMTP_USE_TLS - Implicit TLS (default: on for port 465)
      MQ_SMTP_FROM - Sender address (default: noreply@localhost)
      MQ_SMTP_TIMEOUT - Send timeout in seconds (default: 30)
      MQ_BATCH_SIZE - Messages per batch (default: 10)
      MQ_MAX_BATCHES_PER_TICK - Batches per processor tick (default: 10)
      MQ_TICK_INTERVAL - Seconds between processor ticks (default: 60)
      MQ_RETRY_SWEEP_INTERVAL - Seconds between retry sweeps (default: 300)
      MQ_CAMPAIGN_SWEEP_INTERVAL - Seconds between scheduled campaign sweeps (default: 3600)
      MQ_MAX_ATTEMPTS - Delivery attempts per message (default: 3)
      MQ_RETENTION_DAYS - Days delivered messages are kept (default: 30)
      MQ_TEST_MODE - Tick only on explicit run-now (default: False)
      MQ_COMPANY_NAME / MQ_SUPPORT_EMAIL / MQ_BASE_URL - Values shown in notifications
      MQ_LOG_DELIVERY_ACTIVITY - Log every delivery outcome (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [smtp] host, port, user, password, use_tls, from_address, timeout
      [delivery] batch_size, max_batches_per_tick, tick_interval_seconds,
                 retry_sweep_interval_seconds, campaign_sweep_interval_seconds,
                 max_attempts, retention_days, test_mode
      [content] company_name, support_email, base_url
      [logging] delivery_activity
    """
    config_path = Path(os.getenv("MQ_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    settings = {
        "db_path": get("storage", "db_path", os.getenv("MQ_DB_PATH", "/data/mail_queue.db")),
        "http_host": get("server", "host", os.getenv("MQ_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("MQ_PORT"), default=8000),
        "api_token": get("server", "api_token", os.getenv("MQ_API_TOKEN")),
        "smtp_host": get("smtp", "host", os.getenv("MQ_SMTP_HOST")),
        "smtp_port": get_int("smtp", "port", os.getenv("MQ_SMTP_PORT"), default=25),
        "smtp_user": get("smtp", "user", os.getenv("MQ_SMTP_USER")),
        "smtp_password": get("smtp", "password", os.getenv("MQ_SMTP_PASSWORD")),
        "smtp_use_tls": get_bool("smtp", "use_tls", os.getenv("MQ_SMTP_USE_TLS")),
        "smtp_from": get("smtp", "from_address", os.getenv("MQ_SMTP_FROM", "noreply@localhost")),
        "smtp_timeout": get_float("smtp", "timeout", os.getenv("MQ_SMTP_TIMEOUT"), default=30.0),
        "batch_size": get_int("delivery", "batch_size", os.getenv("MQ_BATCH_SIZE"), default=10),
        "max_batches_per_tick": get_int(
            "delivery",
            "max_batches_per_tick",
            os.getenv("MQ_MAX_BATCHES_PER_TICK"),
            default=10,
        ),
        "tick_interval": get_float("delivery", "tick_interval_seconds", os.getenv("MQ_TICK_INTERVAL"), default=60.0),
        "retry_sweep_interval": get_float(
            "delivery",
            "retry_sweep_interval_seconds",
            os.getenv("MQ_RETRY_SWEEP_INTERVAL"),
            default=300.0,
        ),
        "campaign_sweep_interval": get_float(
            "delivery",
            "campaign_sweep_interval_seconds",
            os.getenv("MQ_CAMPAIGN_SWEEP_INTERVAL"),
            default=3600.0,
        ),
        "max_attempts": get_int("delivery", "max_attempts", os.getenv("MQ_MAX_ATTEMPTS"), default=3),
        "retention_days": get_int("delivery", "retention_days", os.getenv("MQ_RETENTION_DAYS"), default=30),
        "test_mode": get_bool("delivery", "test_mode", os.getenv("MQ_TEST_MODE"), False),
        "company_name": get("content", "company_name", os.getenv("MQ_COMPANY_NAME", "Treasure Hunt Adventures")),
        "support_email": get("content", "support_email", os.getenv("MQ_SUPPORT_EMAIL", "support@localhost")),
        "base_url": get("content", "base_url", os.getenv("MQ_BASE_URL", "http://localhost:8080")),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("MQ_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    for key in ("api_token", "smtp_host"):
        value = settings.get(key)
        if isinstance(value, str):
            value = value.strip() or None
        settings[key] = value
    return settings


def build_service(settings: dict[str, object]) -> MailQueueCore:
    """Create the service described by ``settings`` without starting it."""
    transport = None
    if settings.get("smtp_host"):
        transport = SmtpTransport(
            str(settings["smtp_host"]),
            int(settings["smtp_port"]),
            user=settings.get("smtp_user"),
            password=settings.get("smtp_password"),
            use_tls=settings.get("smtp_use_tls"),
            from_address=str(settings["smtp_from"]),
            send_timeout=float(settings["smtp_timeout"]),
        )
    content = ContentGenerator(
        company_name=str(settings["company_name"]),
        support_email=str(settings["support_email"]),
        base_url=str(settings["base_url"]),
    )
    return MailQueueCore(
        db_path=str(settings["db_path"]),
        transport=transport,
        content=content,
        batch_size=int(settings["batch_size"]),
        max_batches_per_tick=int(settings["max_batches_per_tick"]),
        default_max_attempts=int(settings["max_attempts"]),
        tick_interval=float(settings["tick_interval"]),
        retry_sweep_interval=float(settings["retry_sweep_interval"]),
        campaign_sweep_interval=float(settings["campaign_sweep_interval"]),
        retention_days=int(settings["retention_days"]),
        test_mode=bool(settings.get("test_mode")),
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
    )


if __name__ == "__main__":
    settings = load_settings()
    service = build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    app = create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
