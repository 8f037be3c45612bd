"""
Kaspi.kz merchant API client (read-only)
"""
import logging
import time
from typing import Dict, Iterator, Optional

import requests

from errors import ConfigurationError, TransientExternalError
from orders import OrderLineEntry, OrderRecord

logger = logging.getLogger(__name__)


class KaspiClient:
    """Client for the Kaspi shop API v2"""

    def __init__(self, api_token: str, base_url: str = 'https://kaspi.kz/shop/api/v2',
                 timeout: float = 30, session: Optional[requests.Session] = None):
        """
        Initialize Kaspi API client

        Args:
            api_token: Merchant X-Auth-Token
            base_url: API root
            timeout: HTTP timeout in seconds
            session: requests session (injectable for tests)
        """
        if not api_token:
            raise ConfigurationError('KASPI_API_TOKEN is empty')
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/vnd.api+json',
            'Accept': 'application/vnd.api+json',
            'X-Auth-Token': api_token,
        })

    def request(self, method: str, path: str, params: Optional[Dict] = None) -> Dict:
        url = f'{self.base_url}{path}'
        try:
            response = self.session.request(method, url, params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TransientExternalError(f'Kaspi request failed: {method} {path}: {e}')

        if response.status_code >= 400:
            raise TransientExternalError(
                f'Kaspi HTTP {response.status_code}: {method} {path}: {response.text}',
                status_code=response.status_code, body=response.text,
            )
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise TransientExternalError(
                f'Kaspi invalid JSON: {method} {path}',
                status_code=response.status_code, body=response.text,
            )
        return data

    def _paginate(self, path: str, params: Dict, page_size: int) -> Iterator[Dict]:
        page = 0
        while True:
            query = dict(params)
            query['page[number]'] = page
            query['page[size]'] = page_size
            items = self.request('GET', path, query).get('data') or []
            if not items:
                break
            for item in items:
                yield item
            if len(items) < page_size:
                break
            page += 1

    def list_orders(self, filters: Dict, page_size: int = 100) -> Iterator[OrderRecord]:
        """
        Iterate over orders matching the filters, page by page

        Args:
            filters: Query filters, e.g. {'filter[orders][creationDate][$ge]': ms}
            page_size: Items per page; a short page ends iteration

        Yields:
            OrderRecord for each order (entries are not loaded)
        """
        for item in self._paginate('/orders', filters, page_size):
            yield OrderRecord.from_api(item)

    def list_order_entries(self, order_id: str, page_size: int = 100) -> Iterator[OrderLineEntry]:
        """Iterate over the entries of one order"""
        for item in self._paginate(f'/orders/{order_id}/entries', {}, page_size):
            yield OrderLineEntry.from_api(item)

    def get_entry_product(self, entry_id: str) -> Dict:
        """
        Get product details for an order entry

        Returns:
            {'name': ..., 'code': ...}; missing keys when Kaspi does not return them
        """
        data = self.request('GET', f'/orderentries/{entry_id}/product').get('data') or {}
        attrs = data.get('attributes') or {}
        product = {}
        if attrs.get('name'):
            product['name'] = str(attrs['name'])
        if attrs.get('code'):
            product['code'] = str(attrs['code'])
        return product

    def test_connection(self) -> bool:
        try:
            now_ms = int(time.time() * 1000)
            self.request('GET', '/orders', {
                'page[number]': 0,
                'page[size]': 1,
                'filter[orders][creationDate][$ge]': now_ms - 24 * 3600 * 1000,
                'filter[orders][creationDate][$le]': now_ms,
            })
            logger.info("Connected to Kaspi API (%s)", self.base_url)
            return True
        except Exception as e:
            logger.error("Failed to connect to Kaspi API (%s): %s", self.base_url, e)
            return False
