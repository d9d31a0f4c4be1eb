"""
Business-unit specific SKU pricing for quote line items.

A quote's QBO class names a labor code; the business unit with that code
has its own labor cost per SKU in sku_labor_costs_v2. Without a BU row the
catalog's standard costs are used (labor there is stored per 100 LF).
"""

import logging
from dataclasses import dataclass

from backend_client import eq
from query_cache import make_key
from repository import Repository
from utils import round_money

logger = logging.getLogger(__name__)

SKU_COLUMNS = "id, sku_code, sku_name, product_type_code, standard_cost_per_foot, standard_labor_cost"

CATALOG_SOURCE = "Catalog (No Rate Sheet)"


@dataclass
class SkuPricing:
    sku_id: str
    material_unit_cost: float
    labor_unit_cost: float
    source: str
    business_unit_code: str | None = None

    @property
    def unit_cost(self) -> float:
        return round_money(self.material_unit_cost + self.labor_unit_cost)

    def to_line_item(self, sku: dict) -> dict:
        """Line item fields for a quote, priced at cost until a rate sheet applies."""
        return {
            "sku_id": self.sku_id,
            "sku_code": sku.get("sku_code"),
            "product_type_code": sku.get("product_type_code"),
            "description": sku.get("sku_name"),
            "unit_type": "LF",
            "unit_price": self.unit_cost,
            "unit_cost": self.unit_cost,
            "material_unit_cost": self.material_unit_cost,
            "labor_unit_cost": self.labor_unit_cost,
            "pricing_source": self.source,
            "line_type": "material",
        }


def catalog_pricing(sku: dict) -> SkuPricing:
    """Pricing from the catalog row alone."""
    return SkuPricing(
        sku_id=sku.get("id"),
        material_unit_cost=float(sku.get("standard_cost_per_foot") or 0),
        labor_unit_cost=float(sku.get("standard_labor_cost") or 0) / 100,
        source=CATALOG_SOURCE,
    )


class SkuLaborService(Repository):
    """Resolves labor cost for a SKU under a quote's business unit."""

    def resolve_business_unit(self, qbo_class_id: str | None) -> dict | None:
        """QBO class -> labor_code -> business unit. None when any link is missing."""
        if not qbo_class_id:
            return None

        def fetch():
            qbo_class = self.client.select_one(
                "qbo_classes", columns="id, labor_code", filters=[eq("id", qbo_class_id)], maybe=True
            )
            labor_code = (qbo_class or {}).get("labor_code")
            if not labor_code:
                logger.debug(f"QBO class {qbo_class_id} has no labor code")
                return None
            return self.client.select_one(
                "business_units", columns="id, code, name", filters=[eq("code", labor_code)], maybe=True
            )

        return self._query(make_key("business_units", "qbo_class", qbo_class_id), fetch)

    def get_sku(self, sku_id: str) -> dict:
        return self._query(
            make_key("sku_catalog_v2", sku_id),
            lambda: self.client.select_one("sku_catalog_v2", columns=SKU_COLUMNS, filters=[eq("id", sku_id)]),
        )

    def sku_labor_cost(self, sku_id: str, qbo_class_id: str | None) -> SkuPricing:
        """
        Material and labor cost per LF for a SKU.

        Labor comes from the business unit's sku_labor_costs_v2 row when one
        exists; otherwise from the catalog. Material always comes from the
        catalog.
        """
        sku = self.get_sku(sku_id)
        pricing = catalog_pricing(sku)

        business_unit = self.resolve_business_unit(qbo_class_id)
        if not business_unit:
            return pricing

        row = self._query(
            make_key("sku_labor_costs_v2", sku_id, business_unit["id"]),
            lambda: self.client.select_one(
                "sku_labor_costs_v2",
                columns="sku_id, business_unit_id, labor_cost_per_foot",
                filters=[eq("sku_id", sku_id), eq("business_unit_id", business_unit["id"])],
                maybe=True,
            ),
        )
        if not row or row.get("labor_cost_per_foot") is None:
            logger.info(f"No {business_unit.get('code')} labor cost for SKU {sku.get('sku_code')}, using catalog")
            return pricing

        return SkuPricing(
            sku_id=sku_id,
            material_unit_cost=pricing.material_unit_cost,
            labor_unit_cost=float(row["labor_cost_per_foot"]),
            source=f"BU Labor ({business_unit.get('code')})",
            business_unit_code=business_unit.get("code"),
        )
