"""
Order entries to amoCRM catalog elements
"""
import logging
from typing import Dict, List, Optional, Tuple

from amo_client import AmoClient
from kaspi_client import KaspiClient
from orders import DEFAULT_PRODUCT_TITLE, OrderLineEntry
from payloads import catalog_element_fields

logger = logging.getLogger(__name__)

# (sku, quantity, unit price)
Line = Tuple[str, int, int]


class LineItemLinker:
    """Find-or-create catalog elements for order entries and link them to a lead"""

    def __init__(self, kaspi: KaspiClient, amo: AmoClient, catalog_id: int = 0, page_size: int = 100):
        self.kaspi = kaspi
        self.amo = amo
        self.catalog_id = catalog_id
        self.page_size = page_size

    def resolve_product(self, entry: OrderLineEntry, product_cache: Dict[str, Dict]) -> Tuple[str, str]:
        """
        Title and SKU for an entry

        Falls back to the entry's product detail (cached per run) when the
        entry itself lacks a name or code.

        Returns:
            (title, sku)
        """
        name, code = entry.product_name, entry.product_code
        if not entry.has_product_details and entry.entry_id:
            if entry.entry_id not in product_cache:
                product_cache[entry.entry_id] = self.kaspi.get_entry_product(entry.entry_id)
            product = product_cache[entry.entry_id]
            name = name or product.get('name')
            code = code or product.get('code')

        title = name or DEFAULT_PRODUCT_TITLE
        return title, code or title

    def find_or_create_element(self, title: str, sku: str, price: int) -> Optional[Dict]:
        # First search hit is taken as the element, even for a same-named unrelated product
        found = self.amo.find_catalog_element(self.catalog_id, sku or title)
        if not found:
            found = self.amo.create_catalog_element(
                self.catalog_id, title, catalog_element_fields(sku, price)
            )
        return found or None

    def link_entries(self, lead_id: int, order_id: str, product_cache: Dict[str, Dict]) -> List[Line]:
        """
        Link every entry of an order to the lead with its current quantity

        Safe to repeat: elements are found before being created and a
        re-link overwrites the quantity.

        Returns:
            Lines for the order summary note
        """
        lines: List[Line] = []
        for entry in self.kaspi.list_order_entries(order_id, self.page_size):
            title, sku = self.resolve_product(entry, product_cache)
            qty = max(1, entry.quantity)
            lines.append((sku, qty, entry.unit_price))

            if self.catalog_id <= 0:
                continue
            element = self.find_or_create_element(title, sku, entry.unit_price)
            if element and element.get('id'):
                self.amo.link_lead_to_catalog_element(lead_id, self.catalog_id, int(element['id']), qty)
            else:
                logger.warning("No catalog element for %s (lead %s)", sku, lead_id)
        return lines
