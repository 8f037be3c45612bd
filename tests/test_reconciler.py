"""Tests for reconciliation of already-synced orders."""

import pytest

from conftest import NOW, NOW_MS, FakeKaspi, make_order
from errors import AmoApiError
from orders import OrderLineEntry
from reconciler import DAY_MS, LAST_CHECK_KEY, Reconciler

LEAD_ID = 9001


@pytest.fixture
def synced(reservations):
    """Commit order 100000001 as lead 9001, status NEW, price 10000."""
    claim = reservations.reserve("100000001", "id-100000001", 10000)
    reservations.commit("100000001", LEAD_ID, 10000, "NEW", token=claim.token)


@pytest.fixture
def make_reconciler(amo, reservations, status_map, settings_store, settings):
    def factory(kaspi, config=None):
        return Reconciler(kaspi, amo, reservations, status_map, settings_store,
                          config or settings, clock=lambda: NOW)
    return factory


class TestStatus:
    """Stage transitions."""

    def test_status_change_moves_lead_to_mapped_stage(self, synced, make_reconciler, amo,
                                                       status_map, reservations):
        status_map.upsert_mapping("COMPLETED", 10, 555, responsible_user_id=77)
        kaspi = FakeKaspi([make_order(state="COMPLETED")])

        stats = make_reconciler(kaspi).run()

        assert stats == {"total": 1, "updated": 1, "skipped": 0, "failed": 0}
        assert amo.calls_to("update_lead") == [
            ("update_lead", LEAD_ID, {"status_id": 555, "pipeline_id": 10, "responsible_user_id": 77}),
        ]
        assert reservations.get("100000001").kaspi_status == "COMPLETED"

    def test_unmapped_status_is_not_persisted(self, synced, make_reconciler, amo, reservations):
        kaspi = FakeKaspi([make_order(state="CANCELLED")])

        make_reconciler(kaspi).run()

        assert amo.calls_to("update_lead") == []
        assert reservations.get("100000001").kaspi_status == "NEW"

    def test_inactive_mapping_is_ignored(self, synced, make_reconciler, amo, status_map):
        mapping = status_map.upsert_mapping("COMPLETED", 10, 555)
        status_map.deactivate_mapping(mapping["id"])

        make_reconciler(FakeKaspi([make_order(state="COMPLETED")])).run()

        assert amo.calls_to("update_lead") == []

    def test_unchanged_status_sends_nothing(self, synced, make_reconciler, amo, status_map):
        status_map.upsert_mapping("NEW", 10, 20)

        make_reconciler(FakeKaspi([make_order(state="NEW")])).run()

        assert amo.calls_to("update_lead") == []


class TestPrice:
    """Price updates."""

    def test_price_change_is_pushed_once(self, synced, make_reconciler, amo, reservations):
        kaspi = FakeKaspi([make_order(price=12000)])

        make_reconciler(kaspi).run()
        make_reconciler(kaspi).run()

        assert amo.calls_to("update_lead") == [("update_lead", LEAD_ID, {"price": 12000})]
        assert reservations.get("100000001").total_price == 12000


class TestScope:
    """Which orders are reconciled."""

    def test_unsynced_orders_are_skipped_and_never_created(self, make_reconciler, amo,
                                                            reservations):
        reservations.reserve("HELD", "id-held", 100)
        kaspi = FakeKaspi([make_order(code="HELD"), make_order(code="UNKNOWN"),
                           make_order(code="")])

        stats = make_reconciler(kaspi).run()

        assert stats == {"total": 3, "updated": 0, "skipped": 3, "failed": 0}
        assert amo.calls == []

    def test_failed_update_does_not_stop_the_sweep(self, make_reconciler, amo, reservations):
        for code, lead in (("A", 1), ("B", 2)):
            claim = reservations.reserve(code, f"id-{code}", 100)
            reservations.commit(code, lead, 100, "NEW", token=claim.token)
        amo.failures["update_lead"] = AmoApiError("HTTP 400", status_code=400)
        kaspi = FakeKaspi([make_order(code="A", price=200), make_order(code="B", price=300)])

        stats = make_reconciler(kaspi).run()

        assert stats["failed"] == 1
        assert stats["updated"] == 1
        assert reservations.get("A").total_price == 100
        assert reservations.get("B").total_price == 300

    def test_line_items_are_relinked(self, synced, make_reconciler, amo, settings):
        settings.amo_catalog_id = 77
        kaspi = FakeKaspi([make_order()])
        kaspi.entries["id-100000001"] = [OrderLineEntry("e1", 3, 5000, "Phone", "SKU-1")]

        make_reconciler(kaspi, settings).run()
        make_reconciler(kaspi, settings).run()

        assert len(amo.calls_to("create_catalog_element")) == 1
        assert [link[3] for link in amo.links] == [3, 3]
        assert all(link[0] == LEAD_ID for link in amo.links)


class TestWindow:
    """Reconciliation window and last check timestamp."""

    def test_last_check_is_recorded(self, make_reconciler, settings_store):
        make_reconciler(FakeKaspi()).run()

        assert settings_store.get_int(LAST_CHECK_KEY) == NOW_MS

    def test_window_starts_at_last_check_within_window_days(self, make_reconciler,
                                                            settings_store, settings):
        kaspi = FakeKaspi()
        make_reconciler(kaspi).run()
        first_start = kaspi.filters[0]["filter[orders][creationDate][$ge]"]

        make_reconciler(kaspi).run()

        assert first_start == NOW_MS - settings.reconcile_window_days * DAY_MS
        assert kaspi.filters[1]["filter[orders][creationDate][$ge]"] == NOW_MS
