"""Shared fixtures: per-test SQLite database, settings and in-memory API fakes."""

import itertools
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import Settings
from models import Base
from orders import OrderLineEntry, OrderRecord
from reservation_store import ReservationStore
from settings_store import SettingsStore
from status_map import StatusMap

NOW = 1_700_000_000  # epoch seconds
NOW_MS = NOW * 1000


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'sync.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        kaspi_api_token="kaspi-token",
        amo_subdomain="demo",
        amo_client_id="client",
        amo_client_secret="secret",
        amo_redirect_uri="https://example.com/oauth/callback",
        amo_pipeline_id=10,
        amo_status_id=20,
        amo_responsible_user_id=30,
        amo_contact_address_field_id=501,
        amo_lead_order_code_field_id=601,
        admin_secret="s3cret",
    )


@pytest.fixture
def reservations(session_factory):
    return ReservationStore(session_factory)


@pytest.fixture
def settings_store(session_factory):
    return SettingsStore(session_factory)


@pytest.fixture
def status_map(session_factory):
    return StatusMap(session_factory)


def make_order(code="100000001", state="NEW", price=10000, creation_ms=NOW_MS - 60_000,
               phone="87011234567", order_id=None) -> OrderRecord:
    return OrderRecord(
        order_id=order_id or f"id-{code}",
        code=code,
        creation_ms=creation_ms,
        total_price=price,
        state=state,
        first_name="Aigerim",
        last_name="Sadykova",
        phone=phone,
        address={"formattedAddress": "Almaty, Abay 1"},
    )


class FakeKaspi:
    """Serves fixed orders and entries; records the filters it was asked for."""

    def __init__(self, orders: Optional[List[OrderRecord]] = None):
        self.orders = list(orders or [])
        self.entries: Dict[str, List[OrderLineEntry]] = {}
        self.products: Dict[str, Dict] = {}
        self.filters: List[Dict] = []
        self.product_calls: List[str] = []

    def list_orders(self, filters, page_size=100):
        self.filters.append(dict(filters))
        state = filters.get("filter[orders][state]")
        for order in self.orders:
            if state is None or order.state == state:
                yield order

    def list_order_entries(self, order_id, page_size=100):
        yield from self.entries.get(order_id, [])

    def get_entry_product(self, entry_id):
        self.product_calls.append(entry_id)
        return dict(self.products.get(entry_id, {}))


class FakeAmo:
    """In-memory amoCRM with per-method failure injection."""

    def __init__(self):
        self._ids = itertools.count(1000)
        self.contacts: Dict[int, Dict] = {}
        self.leads: Dict[int, Dict] = {}
        self.deleted_leads: List[int] = []
        self.elements: Dict[int, Dict] = {}
        self.links: List[tuple] = []
        self.notes: List[tuple] = []
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.failures:
            raise self.failures.pop(name)

    def calls_to(self, name):
        return [c for c in self.calls if c[0] == name]

    def find_contact(self, query):
        self._call("find_contact", query)
        for contact in self.contacts.values():
            if contact.get("phone") == query:
                return contact
        return None

    def create_contacts(self, contacts):
        self._call("create_contacts", contacts)
        created = []
        for payload in contacts:
            contact_id = next(self._ids)
            phone = None
            for cf in payload.get("custom_fields_values", []):
                if cf.get("field_code") == "PHONE":
                    phone = cf["values"][0]["value"]
            self.contacts[contact_id] = dict(payload, id=contact_id, phone=phone)
            created.append({"id": contact_id})
        return {"_embedded": {"contacts": created}}

    def update_contact(self, contact_id, fields):
        self._call("update_contact", contact_id, fields)
        self.contacts[contact_id].update(fields)
        return {}

    def create_leads(self, leads):
        self._call("create_leads", leads)
        created = []
        for payload in leads:
            lead_id = next(self._ids)
            self.leads[lead_id] = dict(payload, id=lead_id)
            created.append({"id": lead_id})
        return {"_embedded": {"leads": created}}

    def update_lead(self, lead_id, fields):
        self._call("update_lead", lead_id, fields)
        self.leads.setdefault(lead_id, {"id": lead_id}).update(fields)
        return {}

    def delete_lead(self, lead_id):
        self._call("delete_lead", lead_id)
        self.leads.pop(lead_id, None)
        self.deleted_leads.append(lead_id)

    def link_lead_to_catalog_element(self, lead_id, catalog_id, element_id, quantity):
        self._call("link_lead_to_catalog_element", lead_id, catalog_id, element_id, quantity)
        self.links.append((lead_id, catalog_id, element_id, quantity))

    def add_note(self, lead_id, text):
        self._call("add_note", lead_id, text)
        self.notes.append((lead_id, text))

    def find_catalog_element(self, catalog_id, query):
        self._call("find_catalog_element", catalog_id, query)
        for element in self.elements.values():
            if element["query"] == query:
                return element
        return None

    def create_catalog_element(self, catalog_id, name, custom_fields=None):
        self._call("create_catalog_element", catalog_id, name, custom_fields)
        element_id = next(self._ids)
        sku = name
        for cf in custom_fields or []:
            if cf.get("field_code") == "SKU":
                sku = cf["values"][0]["value"]
        element = {"id": element_id, "name": name, "query": sku}
        self.elements[element_id] = element
        return element


@pytest.fixture
def kaspi():
    return FakeKaspi()


@pytest.fixture
def amo():
    return FakeAmo()
