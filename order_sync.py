"""
New-order pipeline: Kaspi orders -> amoCRM contacts, leads and catalog links
"""
import logging
import time
from typing import Callable, Dict, Iterator, List, Optional

from amo_client import AmoClient
from config import Settings
from errors import AmoApiError, ReservationError, ValidationFailure
from kaspi_client import KaspiClient
from line_items import LineItemLinker
from orders import OrderRecord
from payloads import (
    build_contact_payload, build_lead_payload, coded_field, custom_field_value, format_address,
    line_items_note, normalize_phone, order_date_iso, tags, text_field
)
from reservation_store import ReservationStore
from settings_store import SettingsStore

logger = logging.getLogger(__name__)

WATERMARK_KEY = 'last_creation_ms'
DAY_MS = 24 * 3600 * 1000

SUCCESS = 'success'
SKIPPED = 'skipped'
FAILED = 'failed'


class OrderSyncPipeline:
    """Creates exactly one amoCRM lead per new Kaspi order"""

    def __init__(self, kaspi: KaspiClient, amo: AmoClient, reservations: ReservationStore,
                 settings_store: SettingsStore, config: Settings,
                 clock: Callable[[], float] = time.time):
        """
        Initialize order sync pipeline

        Args:
            kaspi: Kaspi API client
            amo: amoCRM API client
            reservations: Claim store for sync_records
            settings_store: Holds the creation watermark
            config: Account ids, field ids and tunables
            clock: Returns current epoch seconds
        """
        self.kaspi = kaspi
        self.amo = amo
        self.reservations = reservations
        self.settings_store = settings_store
        self.config = config
        self.clock = clock
        self.linker = LineItemLinker(kaspi, amo, config.amo_catalog_id, config.page_size)

    def window(self, now_ms: int) -> Dict[str, int]:
        """Creation-date filter: from max(watermark, now - lookback) to now"""
        watermark = self.settings_store.get_int(WATERMARK_KEY, 0)
        lookback_start = now_ms - self.config.max_lookback_days * DAY_MS
        return {
            'filter[orders][creationDate][$ge]': max(watermark, lookback_start),
            'filter[orders][creationDate][$le]': now_ms,
        }

    def iter_orders(self, now_ms: int) -> Iterator[OrderRecord]:
        base = self.window(now_ms)
        states: List[Optional[str]] = list(self.config.order_states) or [None]
        for state in states:
            filters = dict(base)
            if state:
                filters['filter[orders][state]'] = state
            yield from self.kaspi.list_orders(filters, self.config.page_size)

    def run(self) -> Dict[str, int]:
        """
        Process every order in the current window

        The watermark only moves forward, and only when at least one order
        was committed.

        Returns:
            Dictionary with sync statistics
        """
        now_ms = int(self.clock() * 1000)
        previous = self.settings_store.get_int(WATERMARK_KEY, 0)
        candidate = previous
        stats = {'total': 0, 'success': 0, 'skipped': 0, 'failed': 0, 'invalid': 0}
        product_cache: Dict[str, Dict] = {}

        logger.info("Fetch new orders: start (watermark %s)", previous)
        try:
            for order in self.iter_orders(now_ms):
                stats['total'] += 1
                try:
                    order.validate()
                except ValidationFailure as e:
                    stats['invalid'] += 1
                    logger.warning("Skipping order: %s", e)
                    continue

                outcome = self.process_order(order, product_cache)
                stats[outcome] += 1
                if outcome == SUCCESS:
                    candidate = max(candidate, order.creation_ms)
        finally:
            if stats['success'] > 0:
                # Another run may have stored a later watermark meanwhile
                stored = self.settings_store.set_max(WATERMARK_KEY, candidate)
            else:
                stored = previous
            logger.info("Fetch new orders: done %s (watermark %s)", stats, stored)

        return stats

    def process_order(self, order: OrderRecord, product_cache: Dict[str, Dict]) -> str:
        """
        Reserve, create and commit one order

        Any failure after the reservation deletes the partially created lead
        and releases the claim so the next run retries the order.

        Returns:
            'success', 'skipped' or 'failed'
        """
        try:
            reservation = self.reservations.reserve(order.code, order.order_id, order.total_price)
        except ReservationError as e:
            logger.error("Reservation failed for order %s: %s", order.code, e)
            return FAILED

        if not reservation.claimed:
            logger.debug("Order %s skipped (%s)", order.code, reservation.reason)
            return SKIPPED

        lead_id = None
        try:
            contact_id = self.resolve_contact(order)
            lead_id = self.create_lead(order, contact_id)

            lines = self.linker.link_entries(lead_id, order.order_id, product_cache)
            if lines:
                self.amo.add_note(lead_id, line_items_note(lines))
            else:
                logger.info("Order %s has no entries", order.code)

            self.reservations.commit(order.code, lead_id, order.total_price, order.state,
                                     token=reservation.token)
        except Exception as e:
            logger.error("Order %s failed: %s", order.code, e,
                         extra={'order_code': order.code, 'lead_id': lead_id})
            self._compensate(order.code, lead_id, reservation.token)
            return FAILED

        logger.info("Order %s synced to lead %s", order.code, lead_id)
        return SUCCESS

    def _compensate(self, order_code: str, lead_id: Optional[int], token: str) -> None:
        if lead_id:
            try:
                self.amo.delete_lead(lead_id)
                logger.info("Deleted partial lead %s for order %s", lead_id, order_code)
            except Exception as e:
                logger.error("Could not delete partial lead %s for order %s: %s", lead_id, order_code, e)
        try:
            self.reservations.release(order_code, token)
        except ReservationError as e:
            logger.error("Could not release order %s: %s", order_code, e)

    def resolve_contact(self, order: OrderRecord) -> Optional[int]:
        """
        Find the customer's contact by phone, or create it

        An existing contact's address field is refreshed when it changed.
        """
        phone = normalize_phone(order.phone, self.config.default_country)
        address = format_address(order.address)
        address_field = self.config.amo_contact_address_field_id

        if phone:
            found = self.amo.find_contact(phone)
            if found and found.get('id'):
                contact_id = int(found['id'])
                if address_field and address and custom_field_value(found, address_field) != address:
                    self.amo.update_contact(contact_id, {
                        'custom_fields_values': [text_field(address_field, address)],
                    })
                    logger.info("Updated address of contact %s", contact_id)
                return contact_id

        custom_fields = []
        if phone:
            custom_fields.append(coded_field('PHONE', phone))
        if address_field and address:
            custom_fields.append(text_field(address_field, address))

        payload = build_contact_payload(
            order.first_name, order.last_name,
            self.config.amo_responsible_user_id or None,
            custom_fields, tags(self.config.contact_tags),
        )
        res = self.amo.create_contacts([payload])
        contacts = (res.get('_embedded') or {}).get('contacts') or []
        if not contacts or not contacts[0].get('id'):
            logger.warning("Contact creation for order %s returned no id", order.code)
            return None
        return int(contacts[0]['id'])

    def create_lead(self, order: OrderRecord, contact_id: Optional[int]) -> int:
        cfg = self.config
        custom_fields = []
        if cfg.amo_lead_order_code_field_id:
            custom_fields.append(text_field(cfg.amo_lead_order_code_field_id, order.code))
        address = format_address(order.address)
        if cfg.amo_lead_address_field_id and address:
            custom_fields.append(text_field(cfg.amo_lead_address_field_id, address))
        if cfg.amo_lead_order_date_field_id and order.creation_ms:
            custom_fields.append(text_field(cfg.amo_lead_order_date_field_id,
                                            order_date_iso(order.creation_ms, cfg.timezone)))

        payload = build_lead_payload(
            f'Kaspi Order {order.code}',
            order.total_price,
            cfg.amo_pipeline_id or None,
            cfg.amo_status_id or None,
            cfg.amo_responsible_user_id or None,
            custom_fields,
            [{'id': contact_id}] if contact_id else [],
            tags(cfg.lead_tags),
        )
        res = self.amo.create_leads([payload])
        leads = (res.get('_embedded') or {}).get('leads') or []
        lead_id = int(leads[0].get('id') or 0) if leads else 0
        if lead_id <= 0:
            raise AmoApiError(f"Lead creation for order {order.code} returned no id", body=str(res))
        return lead_id
