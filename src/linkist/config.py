"""Application configuration for linkist.

Everything is read from the environment on each call to load_config(), so a
running test can point the service at a temporary data directory.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

_default_data_dir = Path(__file__).parent.parent.parent / "data"

_TRUE = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE


@dataclass
class AppConfig:
    data_dir: Path = _default_data_dir
    currency: str = "usd"

    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None

    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    email_from: str = "Linkist <noreply@linkist.ai>"
    email_reply_to: str = "support@linkist.ai"

    admin_token: str | None = None

    upi_payee_vpa: str = "linkist@paytm"
    upi_payee_name: str = "Linkist NFC"
    upi_confirmation_timeout: int = 300  # seconds
    upi_callback_secret: str | None = None

    strict_transitions: bool = True
    log_level: str = "INFO"
    cors_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"]
    )


def load_config() -> AppConfig:
    """Build configuration from LINKIST_*, STRIPE_*, SMTP_* and UPI_* variables."""
    env = os.environ
    origins = env.get("LINKIST_CORS_ORIGINS")
    return AppConfig(
        data_dir=Path(env.get("LINKIST_DATA_DIR", _default_data_dir)),
        currency=env.get("LINKIST_CURRENCY", "usd").lower(),
        stripe_secret_key=env.get("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET") or None,
        smtp_host=env.get("SMTP_HOST") or None,
        smtp_port=int(env.get("SMTP_PORT", "587")),
        smtp_user=env.get("SMTP_USER") or None,
        smtp_password=env.get("SMTP_PASSWORD") or None,
        email_from=env.get("EMAIL_FROM", "Linkist <noreply@linkist.ai>"),
        email_reply_to=env.get("EMAIL_REPLY_TO", "support@linkist.ai"),
        admin_token=env.get("LINKIST_ADMIN_TOKEN") or None,
        upi_payee_vpa=env.get("UPI_PAYEE_VPA", "linkist@paytm"),
        upi_payee_name=env.get("UPI_PAYEE_NAME", "Linkist NFC"),
        upi_confirmation_timeout=int(env.get("UPI_CONFIRMATION_TIMEOUT", "300")),
        upi_callback_secret=env.get("UPI_CALLBACK_SECRET") or None,
        strict_transitions=_env_bool("LINKIST_STRICT_TRANSITIONS", True),
        log_level=env.get("LINKIST_LOG_LEVEL", "INFO").upper(),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()]
        if origins
        else AppConfig().cors_origins,
    )


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for the CLI and server."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
