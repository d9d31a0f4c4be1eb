"""
Operating plan document parsing endpoint client.

Text already extracted from an uploaded plan document is POSTed to the
parse-operating-plan function, which returns structured plan JSON. The
result can be reshaped into a bulk import for OperatingPlanService.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any

import httpx

from errors import PipelineError
from operating_plan import (
    AreaInput,
    BulkImportInput,
    InitiativeInput,
    KPIInput,
    ObjectiveInput,
)
from utils import get_functions_config

# Configure logging
logger = logging.getLogger(__name__)

# Set up console handler if not already configured
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class PlanParseError(PipelineError):
    """Parse endpoint rejected the document or could not be reached."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(
            message=f"Plan parse failed ({status_code}): {message}",
            user_message=message or "Failed to parse document",
            recoverable=status_code == 0 or status_code >= 500,
        )


@dataclass
class ParsedOperatingPlan:
    year: int | None = None
    areas: list[dict] = field(default_factory=list)
    initiatives: list[dict] = field(default_factory=list)
    quarterly_objectives: list[dict] = field(default_factory=list)
    bonus_kpis: list[dict] = field(default_factory=list)
    confidence: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "ParsedOperatingPlan":
        return cls(
            year=data.get("year"),
            areas=data.get("areas") or [],
            initiatives=data.get("initiatives") or [],
            quarterly_objectives=data.get("quarterly_objectives") or [],
            bonus_kpis=data.get("bonus_kpis") or [],
            confidence=data.get("confidence") or {},
        )


class PlanParserClient:
    """Calls the plan parsing function."""

    def __init__(self, functions_url: str, transport: httpx.AsyncBaseTransport | None = None):
        config = get_functions_config()
        self.url = f"{functions_url.rstrip('/')}{config['parse_operating_plan']}"
        self.timeout = config["timeout_seconds"]
        self._transport = transport

    @classmethod
    def from_env(cls) -> "PlanParserClient":
        """Initialize from environment variables."""
        return cls(os.environ["FIELDOPS_FUNCTIONS_URL"])

    async def parse(self, document_text: str, document_type: str, default_year: int) -> ParsedOperatingPlan:
        """Parse document text; `default_year` fills in a year the parser did not detect."""
        if not document_text or not document_text.strip():
            raise PlanParseError("Document contains no text")

        logger.info(f"Plan parse request: {document_type}, {len(document_text)} chars")
        body = {"documentText": document_text, "documentType": document_type}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.url, json=body)
            except httpx.TimeoutException:
                logger.error("Plan parse request timed out")
                raise PlanParseError("Parsing timed out")
            except httpx.HTTPError as e:
                logger.error(f"Plan parse request failed: {e}")
                raise PlanParseError(f"Could not reach parser: {e}")

        if response.is_error:
            raise PlanParseError(_error_message(response), status_code=response.status_code)

        plan = ParsedOperatingPlan.from_dict(response.json())
        if not plan.year:
            plan.year = default_year
        logger.info(
            f"Parsed plan {plan.year}: {len(plan.areas)} areas, {len(plan.initiatives)} initiatives, "
            f"{len(plan.quarterly_objectives)} objectives, {len(plan.bonus_kpis)} KPIs"
        )
        return plan


def _error_message(response: httpx.Response) -> str:
    try:
        body: Any = response.json()
    except ValueError:
        return "Failed to parse document"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return "Failed to parse document"


def _pick(row: dict, cls_fields: tuple[str, ...]) -> dict:
    return {k: row.get(k) for k in cls_fields if k in row}


def to_bulk_import(parsed: ParsedOperatingPlan, function_id: str) -> BulkImportInput:
    """Reshape a parsed plan into bulk import input for one function."""
    return BulkImportInput(
        function_id=function_id,
        year=parsed.year,
        areas=[
            AreaInput(**_pick(a, ("name", "strategic_description")))
            for a in parsed.areas
            if a.get("name")
        ],
        initiatives=[
            InitiativeInput(**_pick(i, ("area_name", "title", "description", "annual_target")))
            for i in parsed.initiatives
            if i.get("area_name") and i.get("title")
        ],
        quarterly_objectives=[
            ObjectiveInput(**_pick(o, ("initiative_title", "quarter", "objective")))
            for o in parsed.quarterly_objectives
            if o.get("initiative_title") and o.get("quarter") and o.get("objective")
        ],
        bonus_kpis=[
            KPIInput(**_pick(k, (
                "name", "unit", "description", "target_value", "target_text",
                "min_threshold", "min_multiplier", "max_threshold", "max_multiplier",
            )))
            for k in parsed.bonus_kpis
            if k.get("name") and k.get("unit")
        ],
    )
