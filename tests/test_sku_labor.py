"""
Tests for business-unit SKU labor pricing.

Run with: pytest tests/test_sku_labor.py -v
"""

import pytest

from sku_labor import CATALOG_SOURCE, SkuLaborService, SkuPricing, catalog_pricing

SKU = {
    "id": "sku-1",
    "sku_code": "CED-6",
    "sku_name": "6ft Cedar Privacy",
    "product_type_code": "wood",
    "standard_cost_per_foot": 12.5,
    "standard_labor_cost": 850,
}


@pytest.fixture
def service(client, cache, notifier):
    return SkuLaborService(client, cache=cache, notifier=notifier)


class TestCatalogPricing:
    def test_labor_is_per_hundred_feet(self):
        pricing = catalog_pricing(SKU)
        assert pricing.material_unit_cost == pytest.approx(12.5)
        assert pricing.labor_unit_cost == pytest.approx(8.5)
        assert pricing.source == CATALOG_SOURCE
        assert pricing.unit_cost == pytest.approx(21.0)

    def test_missing_costs_are_zero(self):
        pricing = catalog_pricing({"id": "sku-2"})
        assert pricing.unit_cost == 0

    def test_to_line_item(self):
        item = SkuPricing("sku-1", 12.5, 9.25, "BU Labor (ATX)", "ATX").to_line_item(SKU)
        assert item["sku_code"] == "CED-6"
        assert item["description"] == "6ft Cedar Privacy"
        assert item["unit_price"] == pytest.approx(21.75)
        assert item["labor_unit_cost"] == pytest.approx(9.25)
        assert item["pricing_source"] == "BU Labor (ATX)"


class TestSkuLaborService:
    """Tests for business unit resolution and labor lookup."""

    def test_resolve_business_unit(self, service, client):
        client.select_one.side_effect = [
            {"id": "class-1", "labor_code": "ATX"},
            {"id": "bu-1", "code": "ATX", "name": "Austin"},
        ]

        assert service.resolve_business_unit("class-1")["id"] == "bu-1"
        assert client.select_one.call_args.kwargs["filters"] == [("code", "eq.ATX")]

    def test_resolve_without_labor_code(self, service, client):
        client.select_one.return_value = {"id": "class-1", "labor_code": None}
        assert service.resolve_business_unit("class-1") is None
        assert client.select_one.call_count == 1

    def test_resolve_without_class(self, service, client):
        assert service.resolve_business_unit(None) is None
        client.select_one.assert_not_called()

    def test_bu_labor_cost(self, service, client):
        client.select_one.side_effect = [
            SKU,
            {"id": "class-1", "labor_code": "ATX"},
            {"id": "bu-1", "code": "ATX"},
            {"sku_id": "sku-1", "business_unit_id": "bu-1", "labor_cost_per_foot": 9.25},
        ]

        pricing = service.sku_labor_cost("sku-1", "class-1")

        assert pricing.labor_unit_cost == pytest.approx(9.25)
        assert pricing.material_unit_cost == pytest.approx(12.5)
        assert pricing.source == "BU Labor (ATX)"
        assert pricing.business_unit_code == "ATX"

    def test_falls_back_to_catalog_without_rate(self, service, client):
        client.select_one.side_effect = [
            SKU,
            {"id": "class-1", "labor_code": "ATX"},
            {"id": "bu-1", "code": "ATX"},
            None,
        ]

        pricing = service.sku_labor_cost("sku-1", "class-1")

        assert pricing.source == CATALOG_SOURCE
        assert pricing.labor_unit_cost == pytest.approx(8.5)

    def test_falls_back_to_catalog_without_class(self, service, client):
        client.select_one.return_value = SKU
        pricing = service.sku_labor_cost("sku-1", None)
        assert pricing.source == CATALOG_SOURCE

    def test_lookups_are_cached(self, service, client):
        client.select_one.side_effect = [
            SKU,
            {"id": "class-1", "labor_code": "ATX"},
            {"id": "bu-1", "code": "ATX"},
            {"labor_cost_per_foot": 9.25},
        ]
        service.sku_labor_cost("sku-1", "class-1")
        service.sku_labor_cost("sku-1", "class-1")
        assert client.select_one.call_count == 4
