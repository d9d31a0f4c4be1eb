"""
Project data access.

Projects group the requests, quotes, jobs and invoices for one piece of
work. List reads prefer the v_projects_full view (with aggregates) and fall
back to the base table when the view is not deployed.
"""

import logging
from dataclasses import dataclass, field, asdict

from backend_client import BackendError, eq, in_
from errors import PipelineError, ValidationError
from jobs import CreateJobData
from query_cache import make_key
from repository import Repository

logger = logging.getLogger(__name__)

PROJECT_STATUSES = ("active", "complete", "on_hold", "cancelled", "warranty")

# Postgres "undefined table" and PostgREST "relation not in schema cache"
MISSING_RELATION_CODES = {"42P01", "PGRST205"}

BASE_TABLE_COLUMNS = """
    *,
    client:clients(id, name, company_name),
    community:communities(id, name),
    property:properties(id, address_line1, city, state, zip),
    territory:territories(id, name, code),
    qbo_class:qbo_classes(id, name, labor_code, bu_type)
"""

DETAIL_COLUMNS = """
    *,
    client:clients(id, name, code),
    community:communities(id, name),
    property:properties(id, address_line1, lot_number, city, state, zip),
    territory:territories(id, name, code)
"""

# Aggregates the view provides; zero in base-table fallback mode
EMPTY_AGGREGATES = {
    "quote_count": 0,
    "cnt_quotes": 0,
    "job_count": 0,
    "cnt_jobs": 0,
    "invoice_count": 0,
    "cnt_invoices": 0,
    "total_job_value": 0,
    "sum_invoiced": 0,
    "has_rework": False,
}

PARENT_INHERITED_FIELDS = (
    "client_id",
    "property_id",
    "community_id",
    "territory_id",
    "qbo_class_id",
    "assigned_rep_user_id",
)


@dataclass
class ProjectFilters:
    status: str | list[str] | None = None
    client_id: str | None = None
    assigned_rep_id: str | None = None  # user_id of the rep
    territory_id: str | None = None


@dataclass
class CreateProjectData:
    client_id: str
    name: str
    property_id: str | None = None
    community_id: str | None = None
    territory_id: str | None = None
    qbo_class_id: str | None = None
    assigned_rep_user_id: str | None = None
    description: str | None = None
    source: str | None = None
    source_request_id: str | None = None
    parent_project_id: str | None = None
    relationship_type: str | None = None


@dataclass
class ProjectWithJobsResult:
    """What create_project_with_jobs wrote, step by step."""
    project: dict | None = None
    invoice_group: dict | None = None
    jobs: list[dict] = field(default_factory=list)


class PartialProjectError(PipelineError):
    """A multi-step project creation failed after some rows were written."""

    def __init__(self, cause: PipelineError, partial: ProjectWithJobsResult):
        self.cause = cause
        self.partial = partial
        written = []
        if partial.project:
            written.append(f"project {partial.project.get('id')}")
        if partial.invoice_group:
            written.append(f"invoice group {partial.invoice_group.get('id')}")
        if partial.jobs:
            written.append(f"{len(partial.jobs)} job(s)")
        super().__init__(
            message=f"Project creation stopped after {', '.join(written) or 'nothing'}: {cause.message}",
            user_message=cause.user_message,
            recoverable=False,
        )


def _is_missing_relation(error: BackendError) -> bool:
    return error.code in MISSING_RELATION_CODES


def _filter_conditions(filters: ProjectFilters) -> list:
    conditions = []
    if filters.status:
        if isinstance(filters.status, (list, tuple)):
            conditions.append(in_("status", filters.status))
        else:
            conditions.append(eq("status", filters.status))
    if filters.client_id:
        conditions.append(eq("client_id", filters.client_id))
    if filters.assigned_rep_id:
        conditions.append(eq("assigned_rep_user_id", filters.assigned_rep_id))
    if filters.territory_id:
        conditions.append(eq("territory_id", filters.territory_id))
    return conditions


class ProjectService(Repository):
    """Reads and writes for projects and their child entities."""

    def _with_reps(self, rows: list[dict], id_field: str, target: str) -> list[dict]:
        users = self._fetch_user_profiles(r.get(id_field) for r in rows)
        merged = []
        for row in rows:
            rep = users.get(row.get(id_field))
            merged.append({**row, target: rep.to_dict() if rep else None})
        return merged

    # --- Reads ---

    def list_projects(self, filters: ProjectFilters | None = None) -> list[dict]:
        filters = filters or ProjectFilters()

        def fetch():
            conditions = _filter_conditions(filters)
            try:
                return self.client.select(
                    "v_projects_full", filters=conditions, order="created_at", ascending=False
                )
            except BackendError as e:
                if not _is_missing_relation(e):
                    raise
                logger.warning("v_projects_full view not found, falling back to projects table")
            return self._list_from_base_table(conditions)

        return self._query(make_key("projects", filters), fetch)

    def _list_from_base_table(self, conditions: list) -> list[dict]:
        rows = self.client.select(
            "projects", columns=BASE_TABLE_COLUMNS, filters=conditions, order="created_at", ascending=False
        )
        rows = self._with_reps(rows, "assigned_rep_user_id", "assigned_rep_user")
        flattened = []
        for row in rows:
            client = row.get("client") or {}
            prop = row.get("property") or {}
            community = row.get("community") or {}
            rep = row.get("assigned_rep_user") or {}
            flattened.append({
                **row,
                "client_display_name": client.get("company_name") or client.get("name"),
                "property_address": prop.get("address_line1"),
                "property_city": prop.get("city"),
                "community_name": community.get("name"),
                "rep_name": rep.get("name"),
                **EMPTY_AGGREGATES,
            })
        return flattened

    def get_project(self, project_id: str | None) -> dict | None:
        if not project_id:
            return None

        def fetch():
            row = self.client.select_one("projects", columns=DETAIL_COLUMNS, filters=[eq("id", project_id)])
            return self._with_reps([row], "assigned_rep_user_id", "assigned_rep_user")[0]

        return self._query(make_key("projects", project_id), fetch)

    def get_project_full(self, project_id: str | None) -> dict | None:
        """Project with view aggregates (zeros when the view is missing)."""
        if not project_id:
            return None

        def fetch():
            try:
                return self.client.select_one("v_projects_full", filters=[eq("id", project_id)])
            except BackendError as e:
                if not _is_missing_relation(e):
                    raise
                logger.warning("v_projects_full view not found, falling back to projects table")
            row = self.client.select_one("projects", columns=BASE_TABLE_COLUMNS, filters=[eq("id", project_id)])
            row = self._with_reps([row], "assigned_rep_user_id", "assigned_rep_user")[0]
            return {**row, **EMPTY_AGGREGATES, "active_job_count": 0, "unpaid_invoice_count": 0,
                    "total_invoiced": 0, "total_paid": 0, "total_balance_due": 0}

        return self._query(make_key("project_full", project_id), fetch)

    def project_entities(self, project_id: str | None) -> dict | None:
        """Requests, quotes, jobs and invoices linked to a project, oldest first."""
        if not project_id:
            return None

        def fetch():
            requests_ = self.client.select(
                "service_requests",
                columns="id, request_number, status, request_type, product_type, contact_name, "
                        "address_line1, created_at, assigned_rep_user_id",
                filters=[eq("project_id", project_id)],
                order="created_at",
            )
            quotes = self.client.select(
                "quotes",
                columns="id, quote_number, status, total, product_type, created_at, sent_at, "
                        "client_approved_at, sales_rep_user_id",
                filters=[eq("project_id", project_id)],
                order="created_at",
            )
            jobs = self.client.select(
                "jobs",
                columns="id, job_number, status, is_warranty, product_type, scheduled_date, linear_feet, "
                        "quoted_total, created_at, work_completed_at, assigned_crew:crews(id, name), "
                        "assigned_rep_user_id",
                filters=[eq("project_id", project_id)],
                order="created_at",
            )
            invoices = self.client.select(
                "invoices",
                columns="id, invoice_number, status, total, balance_due, invoice_date, due_date, sent_at",
                filters=[eq("project_id", project_id)],
                order="created_at",
            )

            users = self._fetch_user_profiles(
                [r.get("assigned_rep_user_id") for r in requests_]
                + [q.get("sales_rep_user_id") for q in quotes]
                + [j.get("assigned_rep_user_id") for j in jobs]
            )

            def rep(user_id):
                user = users.get(user_id)
                return user.to_dict() if user else None

            return {
                "requests": [{**r, "assigned_rep_user": rep(r.get("assigned_rep_user_id"))} for r in requests_],
                "quotes": [{**q, "sales_rep_user": rep(q.get("sales_rep_user_id"))} for q in quotes],
                "jobs": [{**j, "assigned_rep_user": rep(j.get("assigned_rep_user_id"))} for j in jobs],
                "invoices": invoices,
            }

        return self._query(make_key("project_entities", project_id), fetch)

    def project_quotes(self, project_id: str | None) -> list[dict]:
        if not project_id:
            return []

        def fetch():
            rows = self.client.select(
                "quotes",
                columns="*, client:clients(id, name, company_name), line_items:quote_line_items(*)",
                filters=[eq("project_id", project_id)],
                order="version_number.desc,created_at.desc",
            )
            return self._with_reps(rows, "sales_rep_user_id", "sales_rep_user")

        return self._query(make_key("project_quotes", project_id), fetch)

    def project_jobs(self, project_id: str | None) -> list[dict]:
        """Jobs in phase order with crew, quote and visits."""
        if not project_id:
            return []

        def fetch():
            rows = self.client.select(
                "jobs",
                columns="""
                    *,
                    client:clients(id, name, company_name),
                    property:properties(id, address_line1, city, state, zip),
                    assigned_crew:crews(id, name, code, crew_size),
                    quote:quotes(id, quote_number, total),
                    visits:job_visits(*),
                    depends_on_job:jobs!depends_on_job_id(id, job_number, name)
                """,
                filters=[eq("project_id", project_id)],
                order="phase_number.asc,created_at.asc",
            )
            return self._with_reps(rows, "assigned_rep_user_id", "assigned_rep_user")

        return self._query(make_key("project_jobs", project_id), fetch)

    def project_invoices(self, project_id: str | None) -> list[dict]:
        if not project_id:
            return []
        return self._query(
            make_key("project_invoices", project_id),
            lambda: self.client.select(
                "invoices",
                columns="""
                    *,
                    client:clients(id, name, company_name),
                    job:jobs(id, job_number, name),
                    payments:payments(id, amount, payment_date, payment_method, reference_number),
                    line_items:invoice_line_items(id, description, quantity, unit_price, total)
                """,
                filters=[eq("project_id", project_id)],
                order="invoice_date",
                ascending=False,
            ),
        )

    def project_timeline(self, project_id: str | None, limit: int = 50) -> list[dict]:
        """Latest activity events; empty when the timeline view is missing."""
        if not project_id:
            return []

        def fetch():
            try:
                return self.client.select(
                    "v_project_timeline",
                    filters=[eq("project_id", project_id)],
                    order="event_time",
                    ascending=False,
                    limit=limit,
                )
            except BackendError as e:
                if not _is_missing_relation(e):
                    raise
                logger.warning("v_project_timeline view not found")
                return []

        return self._query(make_key("project_timeline", project_id), fetch)

    def child_projects(self, parent_project_id: str | None) -> list[dict]:
        if not parent_project_id:
            return []

        def fetch():
            rows = self.client.select(
                "projects",
                columns="*, client:clients(id, name)",
                filters=[eq("parent_project_id", parent_project_id)],
                order="created_at",
                ascending=True,
            )
            return self._with_reps(rows, "assigned_rep_user_id", "assigned_rep_user")

        return self._query(make_key("child_projects", parent_project_id), fetch)

    # --- Writes ---

    def create_project(self, data: CreateProjectData) -> dict:
        row = {**asdict(data), "status": "active"}
        return self._mutate(
            lambda: self.client.insert_one("projects", row),
            success="Project created",
            failure="Failed to create project",
            invalidate=[("projects",)],
        )

    def update_project(self, project_id: str, data: dict) -> None:
        if data.get("status") and data["status"] not in PROJECT_STATUSES:
            raise ValidationError(f"Unknown project status: {data['status']}")
        values = {**data, "updated_at": self._now()}
        self._mutate(
            lambda: self.client.update("projects", values, [eq("id", project_id)]),
            success="Project updated",
            failure="Failed to update project",
            invalidate=[("projects",), ("project_full",)],
        )

    def update_project_status(self, project_id: str, status: str) -> None:
        if status not in PROJECT_STATUSES:
            raise ValidationError(f"Unknown project status: {status}")
        self._mutate(
            lambda: self.client.update(
                "projects", {"status": status, "updated_at": self._now()}, [eq("id", project_id)]
            ),
            success="Project status updated",
            failure="Failed to update project status",
            invalidate=[("projects",), ("project_full",)],
        )

    def create_child_project(
        self,
        parent_project_id: str,
        relationship_type: str,
        name: str,
        description: str | None = None,
    ) -> dict:
        """Create a warranty/change-order/follow-up project under a parent."""

        def run():
            parent = self.client.select_one(
                "projects",
                columns=", ".join(PARENT_INHERITED_FIELDS),
                filters=[eq("id", parent_project_id)],
            )
            row = {name_: parent.get(name_) for name_ in PARENT_INHERITED_FIELDS}
            row.update({
                "parent_project_id": parent_project_id,
                "relationship_type": relationship_type,
                "source": relationship_type,
                "name": name,
                "description": description,
                "status": "warranty" if relationship_type == "warranty" else "active",
            })
            return self.client.insert_one("projects", row)

        return self._mutate(
            run,
            success="Child project created",
            failure="Failed to create child project",
            invalidate=[("projects",), ("child_projects", parent_project_id)],
        )

    def create_project_with_jobs(
        self,
        project: CreateProjectData,
        jobs: list[CreateJobData],
        invoice_group: dict | None = None,
    ) -> ProjectWithJobsResult:
        """
        Create a project, its invoice group, then each job in order.

        Nothing is rolled back on failure. The raised PartialProjectError
        carries whatever was written before the failing step.
        """
        result = ProjectWithJobsResult()

        def run():
            try:
                result.project = self.client.insert_one("projects", {**asdict(project), "status": "active"})
                project_id = result.project["id"]

                result.invoice_group = self.client.insert_one("invoice_groups", {
                    **(invoice_group or {}),
                    "project_id": project_id,
                    "status": "pending",
                })

                for job in jobs:
                    row = {
                        **asdict(job),
                        "client_id": job.client_id or project.client_id,
                        "project_id": project_id,
                        "invoice_group_id": result.invoice_group["id"],
                        "status": "won",
                    }
                    result.jobs.append(self.client.insert_one("jobs", row))
            except PipelineError as e:
                raise PartialProjectError(e, result) from e
            return result

        return self._mutate(
            run,
            success=f"Project created with {len(jobs)} job(s)",
            failure="Failed to create project",
            invalidate=[("projects",), ("jobs",), ("project_jobs",)],
        )
