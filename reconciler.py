"""
Periodic sweep pushing Kaspi status, price and line-item changes into existing leads
"""
import logging
import time
from typing import Callable, Dict

from amo_client import AmoClient
from config import Settings
from kaspi_client import KaspiClient
from line_items import LineItemLinker
from orders import OrderRecord
from reservation_store import ReservationStore
from settings_store import SettingsStore
from status_map import StatusMap

logger = logging.getLogger(__name__)

LAST_CHECK_KEY = 'last_check_ms'
DAY_MS = 24 * 3600 * 1000


class Reconciler:
    """Updates already-synced leads; never creates new ones"""

    def __init__(self, kaspi: KaspiClient, amo: AmoClient, reservations: ReservationStore,
                 status_map: StatusMap, settings_store: SettingsStore, config: Settings,
                 clock: Callable[[], float] = time.time):
        self.kaspi = kaspi
        self.amo = amo
        self.reservations = reservations
        self.status_map = status_map
        self.settings_store = settings_store
        self.config = config
        self.clock = clock
        self.linker = LineItemLinker(kaspi, amo, config.amo_catalog_id, config.page_size)

    def window(self, now_ms: int) -> Dict[str, int]:
        last_check = self.settings_store.get_int(LAST_CHECK_KEY, 0)
        window_start = now_ms - self.config.reconcile_window_days * DAY_MS
        return {
            'filter[orders][creationDate][$ge]': max(window_start, last_check),
            'filter[orders][creationDate][$le]': now_ms,
        }

    def run(self) -> Dict[str, int]:
        """
        Reconcile recent orders

        Returns:
            Dictionary with reconcile statistics
        """
        now_ms = int(self.clock() * 1000)
        stats = {'total': 0, 'updated': 0, 'skipped': 0, 'failed': 0}
        product_cache: Dict[str, Dict] = {}

        logger.info("Reconcile orders: start")
        for order in self.kaspi.list_orders(self.window(now_ms), self.config.page_size):
            stats['total'] += 1
            if not order.code:
                stats['skipped'] += 1
                continue

            record = self.reservations.get(order.code)
            if record is None or not record.is_synced:
                stats['skipped'] += 1
                continue

            try:
                self.reconcile_order(order, int(record.downstream_record_id),
                                     record.kaspi_status, int(record.total_price or 0), product_cache)
                stats['updated'] += 1
            except Exception as e:
                stats['failed'] += 1
                logger.error("Reconcile of order %s (lead %s) failed: %s",
                             order.code, record.downstream_record_id, e,
                             extra={'order_code': order.code})

        self.settings_store.set(LAST_CHECK_KEY, str(now_ms))
        logger.info("Reconcile orders: done %s (last_check_ms %s)", stats, now_ms)
        return stats

    def reconcile_order(self, order: OrderRecord, lead_id: int, stored_status: str,
                        stored_price: int, product_cache: Dict[str, Dict]) -> None:
        """Push status, price and line-item deltas for one synced order"""
        if order.state and order.state != (stored_status or ''):
            self.sync_status(order, lead_id)

        if order.total_price != stored_price:
            self.amo.update_lead(lead_id, {'price': order.total_price})
            self.reservations.record_price(order.code, order.total_price)
            logger.info("Lead %s price %s -> %s", lead_id, stored_price, order.total_price)

        self.linker.link_entries(lead_id, order.order_id, product_cache)

    def sync_status(self, order: OrderRecord, lead_id: int) -> bool:
        mapping = self.status_map.resolve(order.state, self.config.amo_pipeline_id or None)
        if mapping is None:
            logger.info("Order %s status %s has no active mapping", order.code, order.state)
            return False

        fields = {
            'status_id': int(mapping.amo_status_id),
            'pipeline_id': int(mapping.amo_pipeline_id),
        }
        if mapping.amo_responsible_user_id:
            fields['responsible_user_id'] = int(mapping.amo_responsible_user_id)
        self.amo.update_lead(lead_id, fields)
        self.reservations.record_status(order.code, order.state)
        logger.info("Lead %s moved to status %s (%s)", lead_id, mapping.amo_status_id, order.state)
        return True
