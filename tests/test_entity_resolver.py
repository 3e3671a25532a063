"""Tests for vendor / customer resolution."""

import pytest

from conftest import OTHER_TENANT, TENANT
from invoice_ingest.clients.registry_client import RegistryInfo
from invoice_ingest.context import TenantContext
from invoice_ingest.services.entity_resolver import CUSTOMER, VENDOR, EntityResolver


@pytest.fixture
def resolver(store) -> EntityResolver:
    return EntityResolver(store)


@pytest.fixture
def ctx() -> TenantContext:
    return TenantContext.system(TENANT)


class TestEntityResolver:
    def test_tax_id_match(self, resolver, ctx):
        first = resolver.resolve(ctx, VENDOR, "Muster Handel GmbH", tax_id="ATU12345678")
        second = resolver.resolve(ctx, VENDOR, "MUSTER HANDEL", tax_id="ATU12345678")
        assert first == second

    def test_name_match_without_tax_id(self, resolver, ctx):
        first = resolver.resolve(ctx, VENDOR, "Bäckerei Huber")
        second = resolver.resolve(ctx, VENDOR, "  bäckerei huber ")
        assert first == second

    def test_name_match_ignores_entries_with_tax_id(self, resolver, ctx):
        with_tax_id = resolver.resolve(ctx, VENDOR, "Muster GmbH", tax_id="ATU12345678")
        without = resolver.resolve(ctx, VENDOR, "Muster GmbH")
        assert with_tax_id != without

    def test_different_tax_ids_are_different_entities(self, resolver, ctx):
        a = resolver.resolve(ctx, VENDOR, "Muster GmbH", tax_id="ATU12345678")
        b = resolver.resolve(ctx, VENDOR, "Muster GmbH", tax_id="ATU87654321")
        assert a != b

    def test_tenants_are_isolated(self, resolver, ctx):
        a = resolver.resolve(ctx, VENDOR, "Muster GmbH", tax_id="ATU12345678")
        b = resolver.resolve(
            TenantContext.system(OTHER_TENANT), VENDOR, "Muster GmbH", tax_id="ATU12345678"
        )
        assert a != b

    def test_vendors_and_customers_separate(self, resolver, store, ctx):
        vendor_id = resolver.resolve(ctx, VENDOR, "Muster GmbH", tax_id="ATU12345678")
        customer_id = resolver.resolve(ctx, CUSTOMER, "Muster GmbH", tax_id="ATU12345678")

        assert store.get_counterparty(VENDOR, vendor_id).name == "Muster GmbH"
        assert store.get_counterparty(CUSTOMER, customer_id).tax_id == "ATU12345678"

    def test_created_with_details(self, resolver, store, ctx):
        vendor_id = resolver.resolve(
            ctx,
            VENDOR,
            "Muster GmbH",
            tax_id="ATU12345678",
            address="Herrengasse 12, 8010 Graz",
            iban="AT611904300234573201",
        )

        vendor = store.get_counterparty(VENDOR, vendor_id)
        assert vendor.address == "Herrengasse 12, 8010 Graz"
        assert vendor.iban == "AT611904300234573201"
        assert vendor.registry_checked_at is None

    def test_registry_data_stored(self, resolver, store, ctx):
        info = RegistryInfo(
            valid=True,
            registered_name="MUSTER GMBH",
            registered_address="HERRENGASSE 12",
            checked_at="2024-11-20T08:00:00Z",
        )
        vendor_id = resolver.resolve(
            ctx, VENDOR, "Muster GmbH", tax_id="ATU12345678", registry_info=info
        )

        vendor = store.get_counterparty(VENDOR, vendor_id)
        assert vendor.registry_name == "MUSTER GMBH"
        assert vendor.registry_checked_at == "2024-11-20T08:00:00Z"

    def test_registry_data_refreshed_on_match(self, resolver, store, ctx):
        vendor_id = resolver.resolve(ctx, VENDOR, "Muster GmbH", tax_id="ATU12345678")
        info = RegistryInfo(valid=True, registered_name="MUSTER GMBH", checked_at="2024-12-01Z")

        assert resolver.resolve(
            ctx, VENDOR, "Muster GmbH", tax_id="ATU12345678", registry_info=info
        ) == vendor_id
        assert store.get_counterparty(VENDOR, vendor_id).registry_name == "MUSTER GMBH"

    def test_unchecked_registry_info_ignored(self, resolver, store, ctx):
        vendor_id = resolver.resolve(
            ctx,
            VENDOR,
            "Muster GmbH",
            tax_id="ATU12345678",
            registry_info=RegistryInfo.unchecked("timeout"),
        )
        assert store.get_counterparty(VENDOR, vendor_id).registry_checked_at is None

    def test_lost_race_returns_winner(self, resolver, store, ctx, monkeypatch):
        winner = store.create_counterparty(VENDOR, TENANT, "Muster GmbH", tax_id="ATU12345678")
        # First lookup misses, as if the other worker had not committed yet
        original = store.find_counterparty_by_tax_id
        lookups = []

        def find(role, tenant_id, tax_id):
            lookups.append(tax_id)
            if len(lookups) == 1:
                return None
            return original(role, tenant_id, tax_id)

        monkeypatch.setattr(store, "find_counterparty_by_tax_id", find)

        assert resolver.resolve(ctx, VENDOR, "Muster GmbH", tax_id="ATU12345678") == winner
        assert len(lookups) == 2

    @pytest.mark.parametrize("name", ["", "   "])
    def test_name_required(self, resolver, ctx, name):
        with pytest.raises(ValueError):
            resolver.resolve(ctx, VENDOR, name)

    def test_unknown_role(self, resolver, ctx):
        with pytest.raises(ValueError):
            resolver.resolve(ctx, "supplier", "Muster GmbH")
