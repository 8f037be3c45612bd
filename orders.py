"""
Typed views of Kaspi order payloads

Raw JSON:API documents are converted here once; the rest of the code only
sees OrderRecord and OrderLineEntry.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import ValidationFailure

DEFAULT_PRODUCT_TITLE = 'Product'


def _first(*values: Any) -> Any:
    """First value that is not None or an empty string"""
    for value in values:
        if value is not None and value != '':
            return value
    return None


def _to_int(value: Any, default: int = 0) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return default


def _dict(value: Any) -> Dict:
    return value if isinstance(value, dict) else {}


@dataclass
class OrderLineEntry:
    """One order entry (line item)"""

    entry_id: str
    quantity: int
    unit_price: int
    product_name: Optional[str] = None
    product_code: Optional[str] = None
    product_id: Optional[str] = None

    @classmethod
    def from_api(cls, item: Dict) -> 'OrderLineEntry':
        """
        Build from a Kaspi /orders/{id}/entries item

        Fallbacks: productName -> name -> offer.name;
        productCode -> code -> offer.code; basePrice -> totalPrice / quantity.
        """
        attrs = _dict(item.get('attributes'))
        offer = _dict(attrs.get('offer'))
        quantity = max(1, _to_int(attrs.get('quantity'), 1))

        unit_price = attrs.get('basePrice')
        if unit_price is None and attrs.get('totalPrice') is not None:
            unit_price = _to_int(attrs.get('totalPrice')) / quantity

        product = _dict(_dict(_dict(item.get('relationships')).get('product')).get('data'))

        name = _first(attrs.get('productName'), attrs.get('name'), offer.get('name'))
        code = _first(attrs.get('productCode'), attrs.get('code'), offer.get('code'))
        return cls(
            entry_id=str(item.get('id') or ''),
            quantity=quantity,
            unit_price=_to_int(unit_price),
            product_name=str(name) if name is not None else None,
            product_code=str(code) if code is not None else None,
            product_id=str(product['id']) if product.get('id') is not None else None,
        )

    @property
    def has_product_details(self) -> bool:
        return bool(self.product_name) and bool(self.product_code)


@dataclass
class OrderRecord:
    """Read-only view of a Kaspi order"""

    order_id: str
    code: str
    creation_ms: int
    total_price: int
    state: str
    first_name: str = 'Kaspi'
    last_name: str = 'Customer'
    phone: Optional[str] = None
    address: Any = None
    entries: List[OrderLineEntry] = field(default_factory=list)

    @classmethod
    def from_api(cls, item: Dict) -> 'OrderRecord':
        """
        Build from a Kaspi /orders item

        Fallbacks: customer.cellPhone -> cellPhone; customer.firstName -> firstName;
        state -> status; deliveryAddress -> customer.address -> address.
        """
        attrs = _dict(item.get('attributes'))
        customer = _dict(attrs.get('customer'))

        phone = _first(customer.get('cellPhone'), attrs.get('cellPhone'))
        state = _first(attrs.get('state'), attrs.get('status')) or ''
        return cls(
            order_id=str(item.get('id') or ''),
            code=str(attrs.get('code') or '').strip(),
            creation_ms=_to_int(attrs.get('creationDate')),
            total_price=_to_int(attrs.get('totalPrice')),
            state=str(state).strip().upper(),
            first_name=str(_first(customer.get('firstName'), attrs.get('firstName'), 'Kaspi')),
            last_name=str(_first(customer.get('lastName'), attrs.get('lastName'), 'Customer')),
            phone=str(phone) if phone is not None else None,
            address=_first(attrs.get('deliveryAddress'), customer.get('address'), attrs.get('address')),
        )

    def validate(self) -> None:
        """
        Raises:
            ValidationFailure: the order cannot be synced as received
        """
        if not self.code:
            raise ValidationFailure(f"Kaspi order {self.order_id or '?'} has no code")
