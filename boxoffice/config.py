from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

import structlog

from .errors import ConfigError

logger = structlog.get_logger(__name__)

MOCK_SECRET_DEFAULT = "supersecret"

PAYMENT_PROVIDERS = ("mock", "stripe")
STORE_BACKENDS = ("redis", "pg", "sheets", "memory")
MAIL_BACKENDS = ("smtp", "console")


# ----------------------------
# Config & Constants
# ----------------------------
@dataclass(frozen=True)
class Settings:
    environment: str = "development"

    payment_provider: str = "mock"
    stripe_secret_key: Optional[str] = None
    webhook_secret: Optional[str] = MOCK_SECRET_DEFAULT

    store_backend: str = "redis"
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 64
    database_url: Optional[str] = None
    sheets_id: Optional[str] = None
    sheet_name: str = "Sheet1"
    google_service_account_email: Optional[str] = None
    google_service_account_key: Optional[str] = None

    mail_backend: str = "console"
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    email_user: Optional[str] = None
    email_password: Optional[str] = None
    mail_from: Optional[str] = None

    frontend_url: Optional[str] = None
    mock_webhook_url: str = "http://localhost:8000/webhooks/payment"

    # names of variables that were explicitly set, for the debug report
    provided: frozenset = field(default_factory=frozenset)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env

        def get(name: str, default: Optional[str] = None) -> Optional[str]:
            value = env.get(name)
            if value is None or value.strip() == "":
                return default
            return value.strip()

        provider = (get("PAYMENT_PROVIDER", "mock") or "mock").lower()
        default_secret = MOCK_SECRET_DEFAULT if provider == "mock" else None
        webhook_secret = get(
            "WEBHOOK_SECRET", get("STRIPE_WEBHOOK_SECRET", default_secret)
        )

        return cls(
            environment=(get("ENVIRONMENT", get("NODE_ENV", "development"))
                         or "development").lower(),
            payment_provider=provider,
            stripe_secret_key=get("STRIPE_SECRET_KEY"),
            webhook_secret=webhook_secret,
            store_backend=(get("ORDERSTORE_BACKEND", "redis") or "redis").lower(),
            redis_url=get("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_conn=int(get("REDIS_MAX_CONN", "64")),
            database_url=get("DATABASE_URL"),
            sheets_id=get("GOOGLE_SHEETS_ID"),
            sheet_name=get("GOOGLE_SHEET_NAME", "Sheet1"),
            google_service_account_email=get("GOOGLE_SERVICE_ACCOUNT_EMAIL"),
            google_service_account_key=get("GOOGLE_SERVICE_ACCOUNT_KEY"),
            mail_backend=(get("MAIL_BACKEND", "console") or "console").lower(),
            smtp_host=get("SMTP_HOST", "smtp.gmail.com"),
            smtp_port=int(get("SMTP_PORT", "587")),
            email_user=get("EMAIL_USER"),
            email_password=get("EMAIL_PASSWORD"),
            mail_from=get("MAIL_FROM"),
            frontend_url=get("FRONTEND_URL"),
            mock_webhook_url=get(
                "MOCK_WEBHOOK_URL", "http://localhost:8000/webhooks/payment"
            ),
            provided=frozenset(k for k, v in env.items() if v),
        )

    @property
    def production(self) -> bool:
        return self.environment == "production"

    @property
    def public_url(self) -> str:
        return (self.frontend_url or "http://localhost:3000").rstrip("/")

    def missing(self) -> List[str]:
        """Required variables that are unset for the selected backends."""
        missing: List[str] = []

        if self.payment_provider == "stripe":
            if not self.stripe_secret_key:
                missing.append("STRIPE_SECRET_KEY")
            if not self.webhook_secret:
                missing.append("WEBHOOK_SECRET")

        if self.store_backend == "pg" and not self.database_url:
            missing.append("DATABASE_URL")
        if self.store_backend == "sheets":
            if not self.sheets_id:
                missing.append("GOOGLE_SHEETS_ID")
            if not self.google_service_account_email:
                missing.append("GOOGLE_SERVICE_ACCOUNT_EMAIL")
            if not self.google_service_account_key:
                missing.append("GOOGLE_SERVICE_ACCOUNT_KEY")

        if self.mail_backend == "smtp":
            if not self.email_user:
                missing.append("EMAIL_USER")
            if not self.email_password:
                missing.append("EMAIL_PASSWORD")

        if self.production and not self.frontend_url:
            missing.append("FRONTEND_URL")
        return missing

    def problems(self) -> List[str]:
        problems: List[str] = []
        if self.payment_provider not in PAYMENT_PROVIDERS:
            problems.append(f"unknown PAYMENT_PROVIDER {self.payment_provider!r}")
        if self.store_backend not in STORE_BACKENDS:
            problems.append(f"unknown ORDERSTORE_BACKEND {self.store_backend!r}")
        if self.mail_backend not in MAIL_BACKENDS:
            problems.append(f"unknown MAIL_BACKEND {self.mail_backend!r}")
        if self.production and self.webhook_secret == MOCK_SECRET_DEFAULT:
            problems.append("WEBHOOK_SECRET must not use the default in production")
        return problems


def check_settings(settings: Settings) -> None:
    """Report missing or invalid configuration at process start.

    Outside production this only logs. In production it raises ConfigError
    so the application refuses to start.
    """
    missing = settings.missing()
    problems = settings.problems()
    if not missing and not problems:
        return

    logger.error(
        "config_incomplete",
        missing=missing,
        problems=problems,
        environment=settings.environment,
    )
    if settings.production or problems:
        raise ConfigError(
            "invalid configuration: "
            + ", ".join(missing + problems),
            missing=missing,
            problems=problems,
        )
