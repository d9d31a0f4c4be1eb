"""
Leadership operating plan: quarterly objectives, annual actions/targets,
the BU/CEO scoring workflow and bulk import of a parsed plan.

Workflow (stored per row in `workflow_state`):

    draft -> bu_scoring -> pending_ceo_review -> approved

The workflow state of a quarter is derived from its rows: if every row
agrees, that is the state; otherwise the quarter is "mixed" and nothing
can move. The backend stores the final state as "ceo_approved"; it reads
as "approved".
"""

import logging
from dataclasses import dataclass, field

from backend_client import eq, in_
from errors import ValidationError, WorkflowError
from query_cache import make_key
from repository import Repository
from utils import get_bonus_defaults

logger = logging.getLogger(__name__)

WORKFLOW_STATES = ("draft", "bu_scoring", "pending_ceo_review", "approved")

STORED_STATES = {"ceo_approved": "approved"}

# Value written for the final transition (table check constraint)
APPROVED_STORED_STATE = "ceo_approved"

QUARTERLY_TABLE = "initiative_quarterly_objectives"
ACTIONS_TABLE = "initiative_annual_actions"
TARGETS_TABLE = "initiative_annual_targets"

KPI_UNITS = ("dollars", "percent", "score", "count", "text")

BY_FUNCTION_COLUMNS = """
    *,
    initiative:project_initiatives!inner(
        id,
        title,
        area:project_areas!inner(id, function_id)
    )
"""


def normalize_state(value: str | None) -> str:
    """Stored workflow_state as one of WORKFLOW_STATES (missing means draft)."""
    if not value:
        return "draft"
    return STORED_STATES.get(value, value)


@dataclass
class WorkflowStatus:
    state: str  # one of WORKFLOW_STATES, "mixed" or "empty"
    can_edit: bool = False
    can_score_bu: bool = False
    can_score_ceo: bool = False
    can_lock: bool = False
    row_count: int = 0


def aggregate_workflow_state(rows: list[dict]) -> WorkflowStatus:
    """
    Derive one workflow state from a set of plan rows.

    No rows: "empty", editable so objectives can be added. All rows in the
    same state: that state, with the actions it allows. Anything else is
    "mixed" and allows nothing.
    """
    if not rows:
        return WorkflowStatus(state="empty", can_edit=True)

    states = {normalize_state(row.get("workflow_state")) for row in rows}
    if len(states) > 1:
        return WorkflowStatus(state="mixed", row_count=len(rows))

    state = states.pop()
    return WorkflowStatus(
        state=state,
        can_edit=state == "draft",
        can_score_bu=state == "bu_scoring",
        can_score_ceo=state == "pending_ceo_review",
        can_lock=state == "draft",
        row_count=len(rows),
    )


def _is_bu_scored(row: dict) -> bool:
    return bool(row.get("bu_assessment")) or row.get("bu_score") is not None


def _is_ceo_scored(row: dict) -> bool:
    return bool(row.get("ceo_assessment")) or row.get("ceo_score") is not None


class PlanWorkflow:
    """
    Moves a set of plan rows through the scoring workflow.

    Each transition checks the aggregate state, then fires one update per
    row. A failure part way through leaves the earlier rows moved; the
    quarter then reads as "mixed" until the remaining rows are retried.
    """

    def __init__(self, repo: Repository, table: str, label: str = "objectives"):
        self.repo = repo
        self.table = table
        self.label = label

    def status(self, rows: list[dict]) -> WorkflowStatus:
        return aggregate_workflow_state(rows)

    def _require(self, rows: list[dict], expected: str, action: str) -> None:
        current = aggregate_workflow_state(rows)
        if current.state != expected:
            raise WorkflowError(
                f"Cannot {action}: {self.label} are {current.state}, expected {expected}",
                current_state=current.state,
            )

    def _advance(self, rows: list[dict], values: dict, success: str, failure: str) -> int:
        def run():
            for row in rows:
                self.repo.client.update(self.table, values, [eq("id", row["id"])])
            return len(rows)

        return self.repo._mutate(run, success=success, failure=failure, invalidate=[(self.table,)])

    def lock(self, rows: list[dict]) -> int:
        """draft -> bu_scoring. Locked rows can no longer be edited."""
        self._require(rows, "draft", "lock")
        logger.info(f"Locking {len(rows)} {self.label} in {self.table}")
        return self._advance(
            rows,
            {"workflow_state": "bu_scoring", "locked": True},
            success=f"{self.label.capitalize()} locked for BU scoring",
            failure="Failed to lock",
        )

    def submit_bu_scores(self, rows: list[dict]) -> int:
        """bu_scoring -> pending_ceo_review. Every row needs a BU score or assessment."""
        self._require(rows, "bu_scoring", "submit BU scores")
        unscored = [row for row in rows if not _is_bu_scored(row)]
        if unscored:
            raise WorkflowError(
                f"Please score all {len(unscored)} {self.label} before submitting",
                current_state="bu_scoring",
            )
        return self._advance(
            rows,
            {"workflow_state": "pending_ceo_review", "scored_at": self.repo._now()},
            success="Submitted for CEO review",
            failure="Failed to submit scores",
        )

    def ceo_approve(self, rows: list[dict]) -> int:
        """pending_ceo_review -> ceo_approved, which reads as approved.

        Every row needs a CEO score or assessment.
        """
        self._require(rows, "pending_ceo_review", "approve")
        unscored = [row for row in rows if not _is_ceo_scored(row)]
        if unscored:
            raise WorkflowError(
                f"Please score all {len(unscored)} {self.label} before approving",
                current_state="pending_ceo_review",
            )
        return self._advance(
            rows,
            {"workflow_state": APPROVED_STORED_STATE, "approved_at": self.repo._now()},
            success=f"{self.label.capitalize()} approved",
            failure="Failed to approve",
        )


# --- Bulk import input ---

@dataclass
class AreaInput:
    name: str
    strategic_description: str | None = None


@dataclass
class InitiativeInput:
    area_name: str
    title: str
    description: str | None = None
    annual_target: str | None = None


@dataclass
class ObjectiveInput:
    initiative_title: str
    quarter: int
    objective: str


@dataclass
class KPIInput:
    name: str
    unit: str
    description: str | None = None
    target_value: float | None = None
    target_text: str | None = None
    min_threshold: float | None = None
    min_multiplier: float | None = None
    max_threshold: float | None = None
    max_multiplier: float | None = None


@dataclass
class BulkImportInput:
    function_id: str
    year: int
    areas: list[AreaInput] = field(default_factory=list)
    initiatives: list[InitiativeInput] = field(default_factory=list)
    quarterly_objectives: list[ObjectiveInput] = field(default_factory=list)
    bonus_kpis: list[KPIInput] = field(default_factory=list)


@dataclass
class BulkImportResult:
    areas_created: int = 0
    areas_skipped: int = 0
    initiatives_created: int = 0
    initiatives_skipped: int = 0
    objectives_created: int = 0
    kpis_created: int = 0


class OperatingPlanService(Repository):
    """Quarterly objectives, annual actions/targets and plan import."""

    def __init__(self, client, cache=None, notifier=None):
        super().__init__(client, cache=cache, notifier=notifier)
        self.quarterly_workflow = PlanWorkflow(self, QUARTERLY_TABLE, "objectives")
        self.actions_workflow = PlanWorkflow(self, ACTIONS_TABLE, "actions")
        self.targets_workflow = PlanWorkflow(self, TARGETS_TABLE, "targets")

    # --- Quarterly objectives ---

    def quarterly_objectives(self, initiative_id: str, year: int) -> list[dict]:
        return self._query(
            make_key(QUARTERLY_TABLE, initiative_id, year),
            lambda: self.client.select(
                QUARTERLY_TABLE,
                filters=[eq("initiative_id", initiative_id), eq("year", year)],
                order="quarter",
            ),
        )

    def quarterly_objectives_by_function(
        self, function_id: str, year: int, quarter: int | None = None
    ) -> list[dict]:
        """Objectives for every initiative under a function's areas."""

        def fetch():
            conditions = [eq("year", year)]
            if quarter:
                conditions.append(eq("quarter", quarter))
            rows = self.client.select(QUARTERLY_TABLE, columns=BY_FUNCTION_COLUMNS, filters=conditions)
            # Embedded filters on nested relations are not expressible here
            return [
                row for row in rows
                if ((row.get("initiative") or {}).get("area") or {}).get("function_id") == function_id
            ]

        return self._query(make_key(QUARTERLY_TABLE, "function", function_id, year, quarter), fetch)

    def quarter_status(self, function_id: str, year: int, quarter: int) -> WorkflowStatus:
        """Aggregate workflow state of a function's objectives for one quarter."""
        return aggregate_workflow_state(self.quarterly_objectives_by_function(function_id, year, quarter))

    def create_quarterly_objective(self, initiative_id: str, year: int, quarter: int, objective: str) -> dict:
        if quarter not in (1, 2, 3, 4):
            raise ValidationError(f"Quarter must be 1-4, got {quarter}")
        if not objective or not objective.strip():
            raise ValidationError("Objective text is required")
        row = {
            "initiative_id": initiative_id,
            "year": year,
            "quarter": quarter,
            "objective": objective.strip(),
            "created_by": self.client.current_user_id(),
        }
        return self._mutate(
            lambda: self.client.insert_one(QUARTERLY_TABLE, row),
            success="Objective added",
            failure="Failed to add objective",
            invalidate=[(QUARTERLY_TABLE,)],
        )

    def update_quarterly_objective(self, objective_id: str, data: dict) -> None:
        self._mutate(
            lambda: self.client.update(QUARTERLY_TABLE, data, [eq("id", objective_id)]),
            failure="Failed to update objective",
            invalidate=[(QUARTERLY_TABLE,)],
        )

    def delete_quarterly_objective(self, objective_id: str) -> None:
        self._mutate(
            lambda: self.client.delete(QUARTERLY_TABLE, [eq("id", objective_id)]),
            success="Objective deleted",
            failure="Failed to delete objective",
            invalidate=[(QUARTERLY_TABLE,)],
        )

    # --- Annual actions and targets ---

    def _function_initiative_ids(self, function_id: str) -> list[str]:
        areas = self.client.select("project_areas", columns="id", filters=[eq("function_id", function_id)])
        area_ids = [a["id"] for a in areas]
        if not area_ids:
            return []
        initiatives = self.client.select("project_initiatives", columns="id", filters=[in_("area_id", area_ids)])
        return [i["id"] for i in initiatives]

    def _annual_rows(self, table: str, initiative_id: str, year: int) -> list[dict]:
        return self._query(
            make_key(table, initiative_id, year),
            lambda: self.client.select(
                table, filters=[eq("initiative_id", initiative_id), eq("year", year)], order="sort_order"
            ),
        )

    def _annual_rows_by_function(self, table: str, function_id: str, year: int) -> dict[str, list[dict]]:
        """Rows for a function's initiatives grouped by initiative_id."""

        def fetch():
            initiative_ids = self._function_initiative_ids(function_id)
            if not initiative_ids:
                return {}
            rows = self.client.select(
                table, filters=[in_("initiative_id", initiative_ids), eq("year", year)], order="sort_order"
            )
            grouped: dict[str, list[dict]] = {}
            for row in rows:
                grouped.setdefault(row["initiative_id"], []).append(row)
            return grouped

        return self._query(make_key(table, "function", function_id, year), fetch)

    def annual_actions(self, initiative_id: str, year: int) -> list[dict]:
        return self._annual_rows(ACTIONS_TABLE, initiative_id, year)

    def annual_actions_by_function(self, function_id: str, year: int) -> dict[str, list[dict]]:
        return self._annual_rows_by_function(ACTIONS_TABLE, function_id, year)

    def annual_targets(self, initiative_id: str, year: int) -> list[dict]:
        return self._annual_rows(TARGETS_TABLE, initiative_id, year)

    def annual_targets_by_function(self, function_id: str, year: int) -> dict[str, list[dict]]:
        return self._annual_rows_by_function(TARGETS_TABLE, function_id, year)

    def create_annual_action(self, data: dict) -> dict:
        row = {"status": "not_started", "sort_order": 0, **data}
        return self._mutate(
            lambda: self.client.insert_one(ACTIONS_TABLE, row),
            success="Action added",
            failure="Failed to add action",
            invalidate=[(ACTIONS_TABLE,)],
        )

    def update_annual_action(self, action_id: str, data: dict) -> None:
        values = {**data, "updated_at": self._now()}
        self._mutate(
            lambda: self.client.update(ACTIONS_TABLE, values, [eq("id", action_id)]),
            failure="Failed to update action",
            invalidate=[(ACTIONS_TABLE,)],
        )

    def delete_annual_action(self, action_id: str) -> None:
        self._mutate(
            lambda: self.client.delete(ACTIONS_TABLE, [eq("id", action_id)]),
            success="Action deleted",
            failure="Failed to delete action",
            invalidate=[(ACTIONS_TABLE,)],
        )

    def create_annual_target(self, data: dict) -> dict:
        row = {"sort_order": 0, **data}
        return self._mutate(
            lambda: self.client.insert_one(TARGETS_TABLE, row),
            success="Target added",
            failure="Failed to add target",
            invalidate=[(TARGETS_TABLE,)],
        )

    def update_annual_target(self, target_id: str, data: dict) -> None:
        values = {**data, "updated_at": self._now()}
        self._mutate(
            lambda: self.client.update(TARGETS_TABLE, values, [eq("id", target_id)]),
            failure="Failed to update target",
            invalidate=[(TARGETS_TABLE,)],
        )

    def delete_annual_target(self, target_id: str) -> None:
        self._mutate(
            lambda: self.client.delete(TARGETS_TABLE, [eq("id", target_id)]),
            success="Target deleted",
            failure="Failed to delete target",
            invalidate=[(TARGETS_TABLE,)],
        )

    # --- Bulk import ---

    def bulk_import_operating_plan(self, plan: BulkImportInput) -> BulkImportResult:
        """
        Import a parsed operating plan for one function and year.

        Areas already present for the function (by name) and initiatives
        already present in an area (by title) are reused, not duplicated.
        Objectives whose initiative cannot be resolved are dropped. KPIs are
        always inserted. Steps run in order with no rollback.
        """
        user_id = self.client.current_user_id()
        if not user_id:
            raise ValidationError("User not authenticated")
        bad_units = sorted({k.unit for k in plan.bonus_kpis if k.unit not in KPI_UNITS})
        if bad_units:
            raise ValidationError(f"Unknown KPI unit(s): {', '.join(bad_units)}")

        def run():
            result = BulkImportResult()
            area_ids = self._import_areas(plan, result)
            initiative_ids = self._import_initiatives(plan, area_ids, result)
            self._import_objectives(plan, initiative_ids, result)
            self._import_kpis(plan, result)
            logger.info(f"Bulk import complete for function {plan.function_id}: {result}")
            return result

        return self._mutate(
            run,
            success="Operating plan imported",
            failure="Failed to import operating plan",
            invalidate=[(QUARTERLY_TABLE,), ("project_areas",), ("project_initiatives",), ("bonus_kpis",)],
        )

    def _import_areas(self, plan: BulkImportInput, result: BulkImportResult) -> dict[str, str]:
        area_ids: dict[str, str] = {}
        if not plan.areas:
            return area_ids

        existing = self.client.select(
            "project_areas", columns="id, name", filters=[eq("function_id", plan.function_id)]
        )
        for area in existing:
            area_ids[area["name"]] = area["id"]

        new_areas = [a for a in plan.areas if a.name not in area_ids]
        result.areas_skipped = len(plan.areas) - len(new_areas)
        logger.info(f"Areas to insert: {len(new_areas)}, skipped: {result.areas_skipped}")

        if new_areas:
            rows = [
                {
                    "function_id": plan.function_id,
                    "name": area.name,
                    "strategic_description": area.strategic_description or None,
                    "sort_order": len(existing) + index,
                    "is_active": True,
                }
                for index, area in enumerate(new_areas)
            ]
            inserted = self.client.insert("project_areas", rows)
            for area in inserted:
                area_ids[area["name"]] = area["id"]
            result.areas_created = len(inserted)
        return area_ids

    def _import_initiatives(
        self, plan: BulkImportInput, area_ids: dict[str, str], result: BulkImportResult
    ) -> dict[str, str]:
        initiative_ids: dict[str, str] = {}
        if not plan.initiatives or not area_ids:
            return initiative_ids

        existing = self.client.select(
            "project_initiatives",
            columns="id, title, area_id",
            filters=[in_("area_id", list(area_ids.values()))],
        )
        existing_keys = {(i["area_id"], i["title"]) for i in existing}
        for initiative in existing:
            initiative_ids[initiative["title"]] = initiative["id"]

        resolvable = [(i, area_ids[i.area_name]) for i in plan.initiatives if i.area_name in area_ids]
        new_initiatives = [(i, area_id) for i, area_id in resolvable if (area_id, i.title) not in existing_keys]
        result.initiatives_skipped = len(resolvable) - len(new_initiatives)
        logger.info(f"Initiatives to insert: {len(new_initiatives)}, skipped: {result.initiatives_skipped}")

        if new_initiatives:
            rows = [
                {
                    "area_id": area_id,
                    "title": initiative.title,
                    "description": initiative.description or None,
                    "annual_target": initiative.annual_target or None,
                    "status": "not_started",
                    "priority": "medium",
                    "progress_percent": 0,
                    "color_status": "green",
                    "sort_order": index,
                }
                for index, (initiative, area_id) in enumerate(new_initiatives)
            ]
            inserted = self.client.insert("project_initiatives", rows)
            for initiative in inserted:
                initiative_ids[initiative["title"]] = initiative["id"]
            result.initiatives_created = len(inserted)
        return initiative_ids

    def _import_objectives(
        self, plan: BulkImportInput, initiative_ids: dict[str, str], result: BulkImportResult
    ) -> None:
        rows = [
            {
                "initiative_id": initiative_ids[obj.initiative_title],
                "year": plan.year,
                "quarter": obj.quarter,
                "objective": obj.objective,
            }
            for obj in plan.quarterly_objectives
            if obj.initiative_title in initiative_ids
        ]
        if rows:
            self.client.insert(QUARTERLY_TABLE, rows)
        result.objectives_created = len(rows)

    def _import_kpis(self, plan: BulkImportInput, result: BulkImportResult) -> None:
        if not plan.bonus_kpis:
            return
        defaults = get_bonus_defaults()
        rows = [
            {
                "function_id": plan.function_id,
                "year": plan.year,
                "name": kpi.name,
                "description": kpi.description or None,
                "unit": kpi.unit,
                "target_value": kpi.target_value,
                "target_text": kpi.target_text or None,
                "min_threshold": kpi.min_threshold,
                "min_multiplier": kpi.min_multiplier or defaults.get("min_multiplier", 0.5),
                "max_threshold": kpi.max_threshold,
                "max_multiplier": kpi.max_multiplier or defaults.get("max_multiplier", 2.0),
                "sort_order": index,
                "is_active": True,
            }
            for index, kpi in enumerate(plan.bonus_kpis)
        ]
        logger.info(f"Inserting {len(rows)} bonus KPIs")
        self.client.insert("bonus_kpis", rows)
        result.kpis_created = len(rows)

