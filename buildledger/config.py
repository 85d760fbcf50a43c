from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Mapping, Optional


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    database_url: str
    app_url: str
    currency: str
    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_webhook_tolerance: int
    resend_api_key: str
    email_from: str
    mailer_max_retries: int
    mailer_retry_backoff: float
    send_email_max_retries: int
    send_email_timeout: float
    pdf_bucket: str
    pdf_url_ttl: int
    auth_jwt_secret: str
    auth_jwt_algorithm: str
    reconcile_max_attempts: int
    log_level: str
    sql_echo: bool


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env
    app_env = env.get("APP_ENV", "development")
    return Settings(
        app_env=app_env,
        database_url=env.get("DATABASE_URL", "sqlite:///./buildledger.db"),
        app_url=env.get("APP_URL", "http://localhost:3000").rstrip("/"),
        currency=env.get("CURRENCY", "usd").lower(),
        stripe_secret_key=env.get("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET", ""),
        stripe_webhook_tolerance=int(env.get("STRIPE_WEBHOOK_TOLERANCE", "300")),
        resend_api_key=env.get("RESEND_API_KEY", ""),
        email_from=env.get("EMAIL_FROM", "BuildLedger <invoices@buildledger.local>"),
        mailer_max_retries=int(env.get("MAILER_MAX_RETRIES", "3")),
        mailer_retry_backoff=float(env.get("MAILER_RETRY_BACKOFF", "0.5")),
        send_email_max_retries=int(env.get("SEND_EMAIL_MAX_RETRIES", "1")),
        send_email_timeout=float(env.get("SEND_EMAIL_TIMEOUT", "5")),
        pdf_bucket=env.get("PDF_BUCKET", ""),
        pdf_url_ttl=int(env.get("PDF_URL_TTL", str(7 * 24 * 3600))),
        auth_jwt_secret=env.get("AUTH_JWT_SECRET", "dev-secret"),
        auth_jwt_algorithm=env.get("AUTH_JWT_ALGORITHM", "HS256"),
        reconcile_max_attempts=int(env.get("RECONCILE_MAX_ATTEMPTS", "5")),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
        sql_echo=_parse_bool(env.get("SQL_ECHO"), False),
    )
