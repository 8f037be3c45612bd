"""
Builds the sync components from Settings
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import models
from amo_client import AmoClient, auth_url_for, normalize_subdomain
from config import Settings
from kaspi_client import KaspiClient
from order_sync import OrderSyncPipeline
from rate_limiter import RateLimiter
from reconciler import Reconciler
from reservation_store import ReservationStore
from scheduler import Scheduler
from settings_store import SettingsStore
from status_map import StatusMap
from token_manager import TokenManager


@dataclass
class Services:
    config: Settings
    session_factory: models.SessionFactory
    settings_store: SettingsStore
    reservations: ReservationStore
    status_map: StatusMap
    tokens: TokenManager
    kaspi: KaspiClient
    amo: AmoClient
    pipeline: OrderSyncPipeline
    reconciler: Reconciler

    def build_scheduler(self) -> Scheduler:
        scheduler = Scheduler(self.settings_store)
        scheduler.register('fetch_new', self.config.fetch_new_interval, self.pipeline.run)
        scheduler.register('reconcile', self.config.reconcile_interval, self.reconciler.run)
        return scheduler


def build_services(config: Settings,
                   session_factory: Optional[models.SessionFactory] = None) -> Services:
    """
    Wire clients, stores and jobs for one pair of Kaspi/amoCRM accounts

    Raises:
        ConfigurationError: invalid amoCRM subdomain
    """
    if session_factory is None:
        session_factory = models.configure(config.database_url)
        models.init_db()

    subdomain = normalize_subdomain(config.amo_subdomain)
    settings_store = SettingsStore(session_factory)
    stale_after = (timedelta(minutes=config.stale_claim_minutes)
                   if config.stale_claim_minutes else None)
    reservations = ReservationStore(session_factory, stale_after=stale_after)
    status_map = StatusMap(session_factory)

    tokens = TokenManager(
        session_factory,
        auth_url=auth_url_for(subdomain),
        client_id=config.amo_client_id,
        client_secret=config.amo_client_secret,
        redirect_uri=config.amo_redirect_uri,
        margin=config.token_refresh_margin,
        timeout=config.http_timeout,
    )
    tokens.bootstrap(config.amo_access_token, config.amo_refresh_token, config.amo_expires_at)

    kaspi = KaspiClient(config.kaspi_api_token, config.kaspi_api_base, timeout=config.http_timeout)
    amo = AmoClient(subdomain, tokens, RateLimiter(config.requests_per_second),
                    timeout=config.http_timeout)

    return Services(
        config=config,
        session_factory=session_factory,
        settings_store=settings_store,
        reservations=reservations,
        status_map=status_map,
        tokens=tokens,
        kaspi=kaspi,
        amo=amo,
        pipeline=OrderSyncPipeline(kaspi, amo, reservations, settings_store, config),
        reconciler=Reconciler(kaspi, amo, reservations, status_map, settings_store, config),
    )
