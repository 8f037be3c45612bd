"""
Phone/address normalisation and amoCRM payload builders
"""
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

# Address keys in display order
ADDRESS_PARTS = ['town', 'district', 'streetName', 'streetNumber', 'building', 'apartment']


def normalize_phone(raw: Optional[str], default_country: str = 'KZ') -> str:
    """
    Convert a phone number to E.164

    Kazakh numbers: 8XXXXXXXXXX and 7XXXXXXXXXX become +7XXXXXXXXXX,
    ten bare digits get the +7 prefix. Anything else with digits gets a '+'.
    """
    if not raw:
        return ''
    digits = re.sub(r'\D+', '', str(raw))
    if default_country == 'KZ':
        if len(digits) == 11 and digits[0] == '8':
            digits = '7' + digits[1:]
        if len(digits) == 11 and digits[0] == '7':
            return '+' + digits
        if len(digits) == 10:
            return '+7' + digits
    if digits:
        return '+' + digits
    return str(raw).strip()


def format_address(address: Any) -> str:
    """
    Render a Kaspi address as one line

    Uses formattedAddress when present, then the known structured parts,
    then any scalar values; plain strings pass through.
    """
    if address is None:
        return ''
    if isinstance(address, (str, int, float)):
        return str(address).strip()
    if not isinstance(address, dict):
        return ''

    formatted = address.get('formattedAddress')
    if isinstance(formatted, str) and formatted.strip():
        return formatted.strip()

    parts = [str(address[key]).strip() for key in ADDRESS_PARTS
             if address.get(key) not in (None, '') and not isinstance(address[key], (dict, list))]
    if parts:
        return ', '.join(parts)

    scalars = [str(v).strip() for v in address.values()
               if isinstance(v, (str, int, float)) and not isinstance(v, bool) and str(v).strip()]
    return ', '.join(scalars)


def order_date_iso(creation_ms: int, tz_name: str = 'Asia/Almaty') -> str:
    """Kaspi millisecond timestamp as ISO-8601 in the given timezone"""
    moment = datetime.fromtimestamp(creation_ms / 1000.0, tz=timezone.utc)
    return moment.astimezone(ZoneInfo(tz_name)).isoformat()


def text_field(field_id: int, value: Any) -> Dict:
    return {'field_id': field_id, 'values': [{'value': value}]}


def coded_field(field_code: str, value: Any) -> Dict:
    return {'field_code': field_code, 'values': [{'value': value}]}


def tags(names: Iterable[str]) -> List[Dict]:
    return [{'name': name} for name in names if name]


def build_contact_payload(first_name: str, last_name: str, responsible_user_id: Optional[int],
                          custom_fields: List[Dict], contact_tags: List[Dict]) -> Dict:
    """Contact payload; empty custom fields and tags are left out"""
    payload: Dict[str, Any] = {
        'first_name': first_name,
        'last_name': last_name,
        'responsible_user_id': responsible_user_id,
    }
    if custom_fields:
        payload['custom_fields_values'] = list(custom_fields)
    if contact_tags:
        payload['_embedded'] = {'tags': list(contact_tags)}
    return payload


def build_lead_payload(name: str, price: int, pipeline_id: Optional[int], status_id: Optional[int],
                       responsible_user_id: Optional[int], custom_fields: List[Dict],
                       contacts: List[Dict], lead_tags: List[Dict]) -> Dict:
    """Lead payload with embedded contacts and tags"""
    payload: Dict[str, Any] = {
        'name': name,
        'price': price,
        'pipeline_id': pipeline_id,
        'status_id': status_id,
        'responsible_user_id': responsible_user_id,
    }
    if custom_fields:
        payload['custom_fields_values'] = list(custom_fields)

    embedded: Dict[str, Any] = {'contacts': list(contacts)}
    if lead_tags:
        embedded['tags'] = list(lead_tags)
    payload['_embedded'] = embedded
    return payload


def catalog_element_fields(sku: str, price: int) -> List[Dict]:
    fields = []
    if sku:
        fields.append(coded_field('SKU', sku))
    if price:
        fields.append(coded_field('PRICE', price))
    return fields


def line_items_note(lines: List[Tuple[str, int, int]]) -> str:
    """Note text listing (sku, qty, price) lines"""
    text = 'Order items:\nSKU | Qty | Price\n'
    for sku, qty, price in lines:
        text += f'{sku} | {qty} | {price}\n'
    return text


def custom_field_value(entity: Dict, field_id: int) -> Optional[str]:
    """First value of a custom field on an amoCRM entity"""
    for cf in entity.get('custom_fields_values') or []:
        if cf.get('field_id') == field_id:
            values = cf.get('values') or []
            if values:
                value = values[0].get('value')
                return None if value is None else str(value)
    return None
