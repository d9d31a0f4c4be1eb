"""
Bonus KPIs: per-function yearly KPIs, per-user weights, and the bonus
multiplier calculation.

Each KPI maps its current value onto a multiplier curve:

    current <= min_threshold            -> min_multiplier
    min_threshold < current < target   -> linear from min_multiplier to 1.0
    target <= current < max_threshold   -> linear from 1.0 to max_multiplier
    current >= max_threshold            -> max_multiplier

A user's bonus multiplier is the sum of each KPI multiplier times the
user's weight (percent) for that KPI.
"""

import logging
from dataclasses import asdict, dataclass

from backend_client import eq
from query_cache import make_key
from repository import Repository
from utils import get_bonus_defaults

logger = logging.getLogger(__name__)

KPI_COLUMNS = "*, weights:bonus_kpi_weights(*)"


def calculate_multiplier(kpi: dict) -> float:
    """
    Achieved multiplier for one KPI row.

    Missing current or target value means no adjustment (1.0). A missing
    or zero min_threshold is 0; a missing or zero max_threshold is the
    target. Missing multipliers use the configured defaults.
    """
    current = kpi.get("current_value")
    target = kpi.get("target_value")
    if current is None or target is None:
        return 1.0

    defaults = get_bonus_defaults()
    min_multiplier = kpi.get("min_multiplier")
    if min_multiplier is None:
        min_multiplier = defaults.get("min_multiplier", 0.5)
    max_multiplier = kpi.get("max_multiplier")
    if max_multiplier is None:
        max_multiplier = defaults.get("max_multiplier", 2.0)

    current = float(current)
    target = float(target)
    min_threshold = float(kpi.get("min_threshold") or 0)
    max_threshold = float(kpi.get("max_threshold") or target)

    if current <= min_threshold:
        return float(min_multiplier)
    if current >= max_threshold:
        return float(max_multiplier)

    if current < target:
        position = (current - min_threshold) / (target - min_threshold)
        return min_multiplier + position * (1.0 - min_multiplier)

    position = (current - target) / (max_threshold - target)
    return 1.0 + position * (max_multiplier - 1.0)


@dataclass
class KPIContribution:
    kpi_id: str
    kpi_name: str
    weight: float
    target_value: float | None
    current_value: float | None
    achieved_multiplier: float
    weighted_contribution: float


def _kpi_weight(kpi: dict) -> float:
    weights = kpi.get("weights") or []
    if isinstance(weights, dict):
        return weights.get("weight") or 0
    return (weights[0].get("weight") if weights else 0) or 0


def weighted_multiplier(kpis: list[dict]) -> tuple[float, list[KPIContribution]]:
    """
    Total bonus multiplier over KPIs that carry the user's weight.

    Each KPI row has its weight under `weights` (first entry) as returned
    by the weights join. Weights are percentages.
    """
    total = 0.0
    details = []
    for kpi in kpis:
        weight = _kpi_weight(kpi)
        achieved = calculate_multiplier(kpi)
        contribution = achieved * weight / 100
        total += contribution
        details.append(KPIContribution(
            kpi_id=kpi.get("id"),
            kpi_name=kpi.get("name"),
            weight=weight,
            target_value=kpi.get("target_value"),
            current_value=kpi.get("current_value"),
            achieved_multiplier=achieved,
            weighted_contribution=contribution,
        ))
    return total, details


class BonusKPIService(Repository):
    """Reads and writes for bonus KPIs, weights and calculations."""

    # --- KPIs ---

    def list_kpis(self, function_id: str, year: int) -> list[dict]:
        return self._query(
            make_key("bonus_kpis", function_id, year),
            lambda: self.client.select(
                "bonus_kpis",
                columns=KPI_COLUMNS,
                filters=[eq("function_id", function_id), eq("year", year), eq("is_active", True)],
                order="sort_order",
            ),
        )

    def get_kpi(self, kpi_id: str) -> dict:
        return self._query(
            make_key("bonus_kpis", "id", kpi_id),
            lambda: self.client.select_one("bonus_kpis", columns=KPI_COLUMNS, filters=[eq("id", kpi_id)]),
        )

    def create_kpi(self, data: dict) -> dict:
        row = {**data, "created_by": self.client.current_user_id()}
        return self._mutate(
            lambda: self.client.insert_one("bonus_kpis", row),
            success="KPI created",
            failure="Failed to create KPI",
            invalidate=[("bonus_kpis",)],
        )

    def update_kpi(self, kpi_id: str, data: dict) -> None:
        values = {**data, "updated_at": self._now()}
        self._mutate(
            lambda: self.client.update("bonus_kpis", values, [eq("id", kpi_id)]),
            success="KPI updated",
            failure="Failed to update KPI",
            invalidate=[("bonus_kpis",)],
        )

    def delete_kpi(self, kpi_id: str) -> None:
        self._mutate(
            lambda: self.client.delete("bonus_kpis", [eq("id", kpi_id)]),
            success="KPI deleted",
            failure="Failed to delete KPI",
            invalidate=[("bonus_kpis",), ("bonus_kpi_weights",)],
        )

    # --- Weights ---

    def kpi_weights(self, kpi_id: str) -> list[dict]:
        return self._query(
            make_key("bonus_kpi_weights", kpi_id),
            lambda: self.client.select("bonus_kpi_weights", filters=[eq("bonus_kpi_id", kpi_id)]),
        )

    def user_weights(self, user_id: str, function_id: str, year: int) -> list[dict]:
        """A user's weights across one function's KPIs for a year."""
        return self._query(
            make_key("bonus_kpi_weights", "user", user_id, function_id, year),
            lambda: self.client.select(
                "bonus_kpi_weights",
                columns="*, bonus_kpi:bonus_kpis!inner(*)",
                filters=[
                    eq("user_id", user_id),
                    eq("bonus_kpi.function_id", function_id),
                    eq("bonus_kpi.year", year),
                ],
            ),
        )

    def create_weight(self, kpi_id: str, user_id: str, weight: float) -> dict:
        return self._mutate(
            lambda: self.client.insert_one(
                "bonus_kpi_weights", {"bonus_kpi_id": kpi_id, "user_id": user_id, "weight": weight}
            ),
            failure="Failed to add weight",
            invalidate=[("bonus_kpi_weights",)],
        )

    def update_weight(self, weight_id: str, weight: float) -> None:
        self._mutate(
            lambda: self.client.update("bonus_kpi_weights", {"weight": weight}, [eq("id", weight_id)]),
            failure="Failed to update weight",
            invalidate=[("bonus_kpi_weights",)],
        )

    def delete_weight(self, weight_id: str) -> None:
        self._mutate(
            lambda: self.client.delete("bonus_kpi_weights", [eq("id", weight_id)]),
            failure="Failed to delete weight",
            invalidate=[("bonus_kpi_weights",)],
        )

    def upsert_weight(self, kpi_id: str, user_id: str, weight: float) -> dict:
        """Insert or replace the weight for one (KPI, user) pair."""
        rows = self._mutate(
            lambda: self.client.upsert(
                "bonus_kpi_weights",
                {"bonus_kpi_id": kpi_id, "user_id": user_id, "weight": weight},
                on_conflict="bonus_kpi_id,user_id",
            ),
            failure="Failed to save weight",
            invalidate=[("bonus_kpi_weights",), ("bonus_kpis",)],
        )
        return rows[0] if rows else {}

    # --- Calculations ---

    def calculate_bonus(self, function_id: str, user_id: str, year: int, quarter: int | None = None) -> dict:
        """Compute a user's bonus multiplier from current KPI values and store it."""

        def run():
            kpis = self.client.select(
                "bonus_kpis",
                columns="*, weights:bonus_kpi_weights!inner(weight)",
                filters=[
                    eq("function_id", function_id),
                    eq("year", year),
                    eq("weights.user_id", user_id),
                ],
            )
            total, details = weighted_multiplier(kpis)
            logger.info(f"Bonus multiplier for user {user_id} ({function_id}, {year}): {total:.4f}")
            return self.client.insert_one("bonus_calculations", {
                "function_id": function_id,
                "user_id": user_id,
                "year": year,
                "quarter": quarter,
                "calculated_multiplier": total,
                "calculation_details": {
                    "kpis": [asdict(d) for d in details],
                    "total_multiplier": total,
                    "calculation_date": self._now(),
                },
                "created_by": self.client.current_user_id(),
            })

        return self._mutate(
            run,
            success="Bonus calculated",
            failure="Failed to calculate bonus",
            invalidate=[("bonus_calculations", function_id, user_id, year)],
        )

    def bonus_calculations(self, function_id: str, user_id: str, year: int) -> list[dict]:
        return self._query(
            make_key("bonus_calculations", function_id, user_id, year),
            lambda: self.client.select(
                "bonus_calculations",
                filters=[eq("function_id", function_id), eq("user_id", user_id), eq("year", year)],
                order="calculated_at",
                ascending=False,
            ),
        )
