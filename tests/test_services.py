"""Tests for component wiring."""

import pytest

from errors import ConfigurationError
from services import build_services


def test_build_services_wires_jobs(settings, session_factory):
    settings.amo_subdomain = "https://demo.amocrm.ru/"
    settings.amo_access_token = "env-access"
    settings.amo_refresh_token = "env-refresh"
    settings.amo_expires_at = 2_000_000_000

    services = build_services(settings, session_factory)

    assert services.amo.base_url == "https://demo.amocrm.ru"
    assert services.tokens.auth_url == "https://demo.amocrm.ru/oauth2/access_token"
    assert services.tokens.load().access_token == "env-access"
    assert services.pipeline.reservations is services.reservations
    assert services.reconciler.status_map is services.status_map

    scheduler = services.build_scheduler()
    assert [(job.name, job.interval) for job in scheduler.jobs] == [
        ("fetch_new", 60), ("reconcile", 600)]


def test_stale_claim_setting(settings, session_factory):
    settings.stale_claim_minutes = 15

    services = build_services(settings, session_factory)

    assert services.reservations.stale_after.total_seconds() == 900


def test_invalid_subdomain(settings, session_factory):
    settings.amo_subdomain = "not a subdomain"

    with pytest.raises(ConfigurationError):
        build_services(settings, session_factory)
