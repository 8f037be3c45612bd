"""
amoCRM API v4 client
"""
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests

from errors import AmoApiError, ConfigurationError, TransientExternalError
from rate_limiter import RateLimiter
from token_manager import TokenManager

logger = logging.getLogger(__name__)

_AMO_SUFFIX = re.compile(r'\.amocrm(?:\.[a-z0-9-]+)+$', re.IGNORECASE)
_VALID_SUBDOMAIN = re.compile(r'^[a-zA-Z0-9-]+$')


def normalize_subdomain(raw: str) -> str:
    """
    Reduce an account URL or host to its bare amoCRM subdomain

    'https://demo.amocrm.ru/', 'demo.amocrm.com' and 'demo' all yield 'demo'.

    Raises:
        ConfigurationError: nothing usable is left after normalisation
    """
    value = (raw or '').strip()
    if value:
        host = urlparse(value).hostname
        if not host:
            host = urlparse('https://' + value.lstrip('/')).hostname
        value = host if host else value.rstrip('/\\')
        value = _AMO_SUFFIX.sub('', value.strip()).strip()

    if not value:
        raise ConfigurationError('AMO_SUBDOMAIN is empty')
    if '.' in value:
        raise ConfigurationError(f'AMO_SUBDOMAIN must not contain dots: {raw!r}')
    if not _VALID_SUBDOMAIN.match(value):
        raise ConfigurationError(f'AMO_SUBDOMAIN must contain only letters, digits, or hyphen: {raw!r}')
    return value


def auth_url_for(subdomain: str) -> str:
    return f'https://{subdomain}.amocrm.ru/oauth2/access_token'


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class AmoClient:
    """Client for the amoCRM REST API"""

    def __init__(self, subdomain: str, token_manager: TokenManager,
                 rate_limiter: Optional[RateLimiter] = None, timeout: float = 30,
                 session: Optional[requests.Session] = None):
        """
        Initialize amoCRM API client

        Args:
            subdomain: Account subdomain (normalised)
            token_manager: Supplies bearer tokens
            rate_limiter: Shared throttle for every request through this client
            timeout: HTTP timeout in seconds
            session: requests session (injectable for tests)
        """
        self.subdomain = normalize_subdomain(subdomain)
        self.base_url = f'https://{self.subdomain}.amocrm.ru'
        self.tokens = token_manager
        self.limiter = rate_limiter or RateLimiter(7.0)
        self.timeout = timeout
        self.session = session or requests.Session()

    def request(self, method: str, path: str, body: Any = None,
                params: Optional[Dict[str, Any]] = None) -> Dict:
        """
        Perform an authenticated request

        Returns:
            Decoded JSON object, or {} for 204/empty responses

        Raises:
            TransientExternalError: transport failure or timeout
            AmoApiError: HTTP error status or malformed JSON
            AuthenticationError: no usable access token
        """
        self.limiter.throttle()
        access = self.tokens.ensure_access_token()
        url = f'{self.base_url}{path}'
        headers = {
            'Content-Type': 'application/json',
            'Authorization': f'Bearer {access}',
        }

        try:
            response = self.session.request(
                method, url, json=body, params=params, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise TransientExternalError(f'amoCRM request failed: {method} {path}: {e}')

        if response.status_code == 204:
            return {}
        if response.status_code >= 400:
            raise AmoApiError(
                f'amoCRM HTTP {response.status_code}: {method} {path}: {response.text}',
                status_code=response.status_code, body=response.text,
            )
        if not response.content or not response.text.strip():
            return {}

        try:
            data = response.json()
        except ValueError:
            raise AmoApiError(
                f'amoCRM invalid JSON: {method} {path}: {response.text}',
                status_code=response.status_code, body=response.text,
            )
        return data if isinstance(data, dict) else {}

    # Contacts

    def find_contact(self, query: str) -> Optional[Dict]:
        res = self.request('GET', '/api/v4/contacts', params={'query': query, 'limit': 1})
        contacts = (res.get('_embedded') or {}).get('contacts') or []
        return contacts[0] if contacts else None

    def create_contacts(self, contacts: List[Dict]) -> Dict:
        return self.request('POST', '/api/v4/contacts', contacts)

    def update_contact(self, contact_id: int, fields: Dict) -> Dict:
        payload = dict(fields)
        payload['id'] = contact_id
        return self.request('PATCH', '/api/v4/contacts', [payload])

    # Leads

    def create_leads(self, leads: List[Dict]) -> Dict:
        return self.request('POST', '/api/v4/leads', leads)

    def update_lead(self, lead_id: int, fields: Dict) -> Dict:
        payload = dict(fields)
        payload['id'] = lead_id
        return self.request('PATCH', '/api/v4/leads', [payload])

    def delete_lead(self, lead_id: int) -> None:
        self.request('DELETE', f'/api/v4/leads/{lead_id}')

    def link_lead_to_catalog_element(self, lead_id: int, catalog_id: int,
                                     element_id: int, quantity: int) -> None:
        payload = [{
            'to_entity_id': element_id,
            'to_entity_type': 'catalog_elements',
            'metadata': {'quantity': quantity, 'catalog_id': catalog_id},
        }]
        self.request('POST', f'/api/v4/leads/{lead_id}/link', payload)

    def add_note(self, lead_id: int, text: str) -> None:
        payload = [{'note_type': 'common', 'params': {'text': text}}]
        self.request('POST', f'/api/v4/leads/{lead_id}/notes', payload)

    # Catalogs

    def find_catalog_element(self, catalog_id: int, query: str) -> Optional[Dict]:
        res = self.request('GET', f'/api/v4/catalogs/{catalog_id}/elements',
                           params={'query': query, 'limit': 1})
        elements = (res.get('_embedded') or {}).get('elements') or []
        return elements[0] if elements else None

    def create_catalog_element(self, catalog_id: int, name: str,
                               custom_fields: Optional[List[Dict]] = None) -> Dict:
        element: Dict[str, Any] = {'name': name}
        if custom_fields:
            element['custom_fields_values'] = custom_fields
        res = self.request('POST', f'/api/v4/catalogs/{catalog_id}/elements', [element])
        elements = (res.get('_embedded') or {}).get('elements') or []
        return elements[0] if elements else {}

    # Pipelines

    def list_pipelines(self, page_size: int = 50) -> List[Dict]:
        """
        Get all lead pipelines with their statuses

        Returns:
            [{id, name, sort, color, statuses: [{id, name, sort, color}]}],
            sorted by (sort, id); statuses sorted by sort
        """
        page = 1
        result = []

        while True:
            response = self.request('GET', '/api/v4/leads/pipelines', params={
                'page': page,
                'limit': page_size,
                'with': 'leads_statuses',
            })

            embedded = response.get('_embedded')
            if not isinstance(embedded, dict):
                logger.error("amoCRM pipelines response missing _embedded (page %s)", page)
                break
            pipelines = embedded.get('pipelines')
            if not isinstance(pipelines, list):
                logger.error("amoCRM pipelines response missing pipelines array (page %s)", page)
                break

            for pipeline in pipelines:
                parsed = self._parse_pipeline(pipeline)
                if parsed is not None:
                    result.append(parsed)

            if not ((response.get('_links') or {}).get('next') or {}).get('href'):
                break
            page += 1

        result.sort(key=lambda p: (p['sort'], p['id']))
        return result

    def _parse_pipeline(self, pipeline: Any) -> Optional[Dict]:
        if not isinstance(pipeline, dict):
            logger.error("amoCRM pipeline item is not an object: %r", pipeline)
            return None

        pipeline_id = _as_int(pipeline.get('id'))
        sort = _as_int(pipeline.get('sort'))
        name = pipeline.get('name')
        if pipeline_id is None or sort is None or name is None:
            logger.error("amoCRM pipeline item missing required fields: %r", pipeline)
            return None

        raw_statuses = (pipeline.get('_embedded') or {}).get('statuses')
        if raw_statuses is None:
            raw_statuses = pipeline.get('statuses')
        if raw_statuses is not None and not isinstance(raw_statuses, list):
            logger.error("amoCRM pipeline %s statuses is not a list", pipeline_id)
            raw_statuses = []

        statuses = []
        for status in raw_statuses or []:
            if not isinstance(status, dict):
                logger.error("amoCRM status item is not an object (pipeline %s)", pipeline_id)
                continue
            status_id = _as_int(status.get('id'))
            status_sort = _as_int(status.get('sort'))
            status_name = status.get('name')
            if status_id is None or status_sort is None or status_name is None:
                logger.error("amoCRM status item missing required fields (pipeline %s): %r",
                             pipeline_id, status)
                continue
            statuses.append({
                'id': status_id,
                'name': str(status_name),
                'sort': status_sort,
                'color': str(status.get('color') or ''),
            })

        statuses.sort(key=lambda s: s['sort'])
        return {
            'id': pipeline_id,
            'name': str(name),
            'sort': sort,
            'color': str(pipeline.get('color') or ''),
            'statuses': statuses,
        }

    def test_connection(self) -> bool:
        """
        Test connection to amoCRM

        Returns:
            True if the account endpoint answers
        """
        try:
            account = self.request('GET', '/api/v4/account')
            logger.info("Connected to amoCRM %s (account %s)", self.subdomain, account.get('name'))
            return True
        except Exception as e:
            logger.error("Failed to connect to amoCRM %s: %s", self.subdomain, e)
            return False
