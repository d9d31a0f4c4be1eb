"""
Tests for the operating plan parser client.

Run with: pytest tests/test_plan_parser.py -v
"""

import asyncio
import json

import httpx
import pytest

from plan_parser import (
    ParsedOperatingPlan,
    PlanParseError,
    PlanParserClient,
    to_bulk_import,
)

FUNCTIONS_URL = "https://app.example.com/"

PARSED = {
    "year": 2026,
    "areas": [{"name": "Growth", "strategic_description": "Expand"}],
    "initiatives": [{"area_name": "Growth", "title": "New markets", "annual_target": "2 cities"}],
    "quarterly_objectives": [{"initiative_title": "New markets", "quarter": 1, "objective": "Open SA"}],
    "bonus_kpis": [{"name": "Revenue", "unit": "dollars", "target_value": 5000000}],
    "confidence": {"overall": 0.9},
}


def _client(handler):
    return PlanParserClient(FUNCTIONS_URL, transport=httpx.MockTransport(handler))


def _parse(client, text="Plan text", year=2025):
    return asyncio.run(client.parse(text, "docx", year))


class TestPlanParserClient:
    """Tests for calling the parse endpoint."""

    def test_url_from_config(self):
        client = PlanParserClient(FUNCTIONS_URL)
        assert client.url == "https://app.example.com/.netlify/functions/parse-operating-plan"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("FIELDOPS_FUNCTIONS_URL", "https://env.example.com")
        assert PlanParserClient.from_env().url.startswith("https://env.example.com/")

    def test_posts_document(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=PARSED)

        plan = _parse(_client(handler), text="Q1: open SA")

        assert seen["method"] == "POST"
        assert seen["url"].endswith("/parse-operating-plan")
        assert seen["body"] == {"documentText": "Q1: open SA", "documentType": "docx"}
        assert plan.year == 2026
        assert plan.areas[0]["name"] == "Growth"
        assert plan.confidence == {"overall": 0.9}

    def test_default_year_when_missing(self):
        plan = _parse(_client(lambda request: httpx.Response(200, json={"areas": []})), year=2025)
        assert plan.year == 2025
        assert plan.initiatives == []

    def test_empty_text_rejected_without_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        with pytest.raises(PlanParseError) as exc:
            _parse(_client(handler), text="   ")
        assert exc.value.user_message == "Document contains no text"

    def test_error_body_message(self):
        handler = lambda request: httpx.Response(413, json={"error": "Document too large"})

        with pytest.raises(PlanParseError) as exc:
            _parse(_client(handler))

        assert exc.value.status_code == 413
        assert exc.value.user_message == "Document too large"
        assert exc.value.recoverable is False

    def test_error_without_json(self):
        handler = lambda request: httpx.Response(502, text="Bad gateway")

        with pytest.raises(PlanParseError) as exc:
            _parse(_client(handler))

        assert exc.value.user_message == "Failed to parse document"
        assert exc.value.recoverable is True

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(PlanParseError) as exc:
            _parse(_client(handler))
        assert exc.value.user_message == "Parsing timed out"
        assert exc.value.recoverable is True

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(PlanParseError) as exc:
            _parse(_client(handler))
        assert "Could not reach parser" in exc.value.user_message


class TestToBulkImport:
    """Tests for reshaping a parsed plan into import input."""

    def test_maps_all_sections(self):
        plan = to_bulk_import(ParsedOperatingPlan.from_dict(PARSED), "f-1")

        assert plan.function_id == "f-1"
        assert plan.year == 2026
        assert plan.areas[0].strategic_description == "Expand"
        assert plan.initiatives[0].annual_target == "2 cities"
        assert plan.quarterly_objectives[0].quarter == 1
        assert plan.bonus_kpis[0].target_value == 5000000
        assert plan.bonus_kpis[0].min_threshold is None

    def test_drops_incomplete_entries(self):
        parsed = ParsedOperatingPlan(
            year=2026,
            areas=[{"name": ""}, {"name": "Ops"}],
            initiatives=[{"title": "No area"}],
            quarterly_objectives=[{"initiative_title": "X", "objective": "No quarter"}],
            bonus_kpis=[{"name": "No unit"}],
        )

        plan = to_bulk_import(parsed, "f-1")

        assert [a.name for a in plan.areas] == ["Ops"]
        assert plan.initiatives == []
        assert plan.quarterly_objectives == []
        assert plan.bonus_kpis == []

    def test_ignores_unknown_keys(self):
        parsed = ParsedOperatingPlan(areas=[{"name": "Ops", "color": "blue"}])
        assert to_bulk_import(parsed, "f-1").areas[0].name == "Ops"
