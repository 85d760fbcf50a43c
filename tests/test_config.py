import json
import logging

from buildledger.config import load_settings
from buildledger.logging_utils import JsonFormatter


def test_defaults():
    settings = load_settings({})
    assert settings.database_url == "sqlite:///./buildledger.db"
    assert settings.currency == "usd"
    assert settings.stripe_webhook_tolerance == 300
    assert settings.reconcile_max_attempts == 5
    assert (settings.send_email_max_retries, settings.send_email_timeout) == (1, 5.0)
    assert settings.sql_echo is False


def test_environment_overrides():
    settings = load_settings(
        {
            "APP_URL": "https://app.example.com/",
            "CURRENCY": "CAD",
            "MAILER_MAX_RETRIES": "5",
            "LOG_LEVEL": "debug",
            "SQL_ECHO": "yes",
        }
    )
    assert settings.app_url == "https://app.example.com"
    assert settings.currency == "cad"
    assert settings.mailer_max_retries == 5
    assert settings.log_level == "DEBUG"
    assert settings.sql_echo is True


def test_json_formatter_flattens_extras():
    record = logging.LogRecord("buildledger.reconciliation", logging.INFO, __file__, 1, "payment applied", None, None)
    record.invoice_id = "inv-1"
    entry = json.loads(JsonFormatter().format(record))
    assert entry["message"] == "payment applied"
    assert entry["level"] == "INFO"
    assert entry["invoice_id"] == "inv-1"
    assert entry["timestamp"].endswith("+00:00")
