import logging

from helpdesk.core.config import Settings
from helpdesk.core.logging import configure_logging, init_tracer, parse_otlp_headers


def test_settings_defaults(monkeypatch):
    monkeypatch.delenv("TICKETS_PAGE_SIZE", raising=False)
    settings = Settings(_env_file=None)

    assert settings.pending_attachment_max_age_hours == 48
    assert settings.tickets_page_size == 20
    assert settings.notifications_queue == "notifications"
    assert settings.otel_enabled is False


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("TICKETS_PAGE_SIZE", "50")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")

    settings = Settings(_env_file=None)

    assert settings.tickets_page_size == 50
    assert settings.redis_url == "redis://cache:6379/2"


def test_parse_otlp_headers():
    assert parse_otlp_headers("api-key=abc, tenant = helpdesk,broken,=x") == {
        "api-key": "abc",
        "tenant": "helpdesk",
    }
    assert parse_otlp_headers(None) == {}


def test_configure_logging_sets_level():
    settings = Settings(_env_file=None, log_level="debug")

    logger = configure_logging(settings)

    assert logger.name == "helpdesk"
    assert logger.level == logging.DEBUG
    assert logging.getLogger("asyncpg").level == logging.INFO


def test_tracer_disabled_by_default():
    assert init_tracer(Settings(_env_file=None)) is None
