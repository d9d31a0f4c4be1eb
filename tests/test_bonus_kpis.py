"""
Tests for bonus KPI multipliers and BonusKPIService.

Run with: pytest tests/test_bonus_kpis.py -v
"""

import pytest

from bonus_kpis import BonusKPIService, calculate_multiplier, weighted_multiplier


def _kpi(current, **extra):
    kpi = {
        "id": "k-1",
        "name": "Revenue",
        "current_value": current,
        "target_value": 100,
        "min_threshold": 50,
        "max_threshold": 150,
        "min_multiplier": 0.5,
        "max_multiplier": 2.0,
    }
    kpi.update(extra)
    return kpi


@pytest.fixture
def service(client, cache, notifier):
    return BonusKPIService(client, cache=cache, notifier=notifier)


class TestCalculateMultiplier:
    """Tests for the piecewise-linear multiplier curve."""

    @pytest.mark.parametrize("current,expected", [
        (40, 0.5),
        (50, 0.5),
        (75, 0.75),
        (100, 1.0),
        (125, 1.5),
        (150, 2.0),
        (400, 2.0),
    ])
    def test_curve(self, current, expected):
        assert calculate_multiplier(_kpi(current)) == pytest.approx(expected)

    def test_missing_current_is_neutral(self):
        assert calculate_multiplier(_kpi(None)) == 1.0

    def test_missing_target_is_neutral(self):
        assert calculate_multiplier(_kpi(80, target_value=None)) == 1.0

    def test_missing_min_threshold_is_zero(self):
        assert calculate_multiplier(_kpi(50, min_threshold=None)) == pytest.approx(0.75)

    def test_missing_max_threshold_is_target(self):
        assert calculate_multiplier(_kpi(100, max_threshold=None)) == pytest.approx(2.0)

    def test_default_multipliers(self):
        kpi = _kpi(0, min_multiplier=None, max_multiplier=None)
        assert calculate_multiplier(kpi) == pytest.approx(0.5)
        kpi = _kpi(999, min_multiplier=None, max_multiplier=None)
        assert calculate_multiplier(kpi) == pytest.approx(2.0)

    def test_zero_multiplier_is_kept(self):
        assert calculate_multiplier(_kpi(10, min_multiplier=0)) == 0


class TestWeightedMultiplier:
    """Tests for combining KPI multipliers by user weight."""

    def test_weighted_sum(self):
        kpis = [
            _kpi(75, id="a", weights=[{"weight": 60}]),
            _kpi(125, id="b", weights=[{"weight": 40}]),
        ]

        total, details = weighted_multiplier(kpis)

        assert total == pytest.approx(1.05)
        assert details[0].weighted_contribution == pytest.approx(0.45)
        assert details[1].achieved_multiplier == pytest.approx(1.5)

    def test_weight_as_object(self):
        total, _ = weighted_multiplier([_kpi(100, weights={"weight": 100})])
        assert total == pytest.approx(1.0)

    def test_no_weight_contributes_nothing(self):
        total, details = weighted_multiplier([_kpi(100, weights=[])])
        assert total == 0
        assert details[0].weight == 0

    def test_empty(self):
        assert weighted_multiplier([]) == (0.0, [])


class TestBonusKPIService:
    """Tests for KPI, weight and calculation persistence."""

    def test_list_kpis_active_only(self, service, client):
        client.select.return_value = []
        service.list_kpis("f-1", 2025)
        filters = client.select.call_args.kwargs["filters"]
        assert ("is_active", "eq.true") in filters
        assert ("year", "eq.2025") in filters

    def test_create_kpi_records_creator(self, service, client):
        client.insert_one.return_value = {"id": "k-1"}
        service.create_kpi({"name": "Revenue", "unit": "dollars"})
        assert client.insert_one.call_args.args[1]["created_by"] == "user-1"

    def test_upsert_weight(self, service, client):
        client.upsert.return_value = [{"id": "w-1", "weight": 40}]

        row = service.upsert_weight("k-1", "u-1", 40)

        assert row == {"id": "w-1", "weight": 40}
        assert client.upsert.call_args.kwargs["on_conflict"] == "bonus_kpi_id,user_id"

    def test_upsert_weight_empty_result(self, service, client):
        client.upsert.return_value = []
        assert service.upsert_weight("k-1", "u-1", 40) == {}

    def test_calculate_bonus_stores_result(self, service, client, notifier):
        client.select.return_value = [
            _kpi(75, id="a", weights=[{"weight": 50}]),
            _kpi(150, id="b", weights=[{"weight": 50}]),
        ]
        client.insert_one.return_value = {"id": "calc-1"}

        service.calculate_bonus("f-1", "u-1", 2025, quarter=2)

        filters = client.select.call_args.kwargs["filters"]
        assert ("weights.user_id", "eq.u-1") in filters
        table, row = client.insert_one.call_args.args
        assert table == "bonus_calculations"
        assert row["calculated_multiplier"] == pytest.approx(1.375)
        assert row["quarter"] == 2
        details = row["calculation_details"]
        assert details["total_multiplier"] == pytest.approx(1.375)
        assert [k["kpi_id"] for k in details["kpis"]] == ["a", "b"]
        assert "calculation_date" in details
        assert notifier.successes == ["Bonus calculated"]

    def test_calculate_bonus_invalidates_history(self, service, client):
        client.select.return_value = []
        service.bonus_calculations("f-1", "u-1", 2025)
        client.insert_one.return_value = {"id": "calc-1"}

        service.calculate_bonus("f-1", "u-1", 2025)
        service.bonus_calculations("f-1", "u-1", 2025)

        history_reads = [c for c in client.select.call_args_list if c.args[0] == "bonus_calculations"]
        assert len(history_reads) == 2
