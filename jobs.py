"""
Job data access: crew/client listings, workflow status changes with yard
timestamps, scheduling, invoicing a finished job, and job visits.
"""

import logging
from dataclasses import dataclass, asdict

from backend_client import eq, in_
from errors import ValidationError
from query_cache import make_key
from repository import Repository
from utils import get_quote_defaults

logger = logging.getLogger(__name__)

JOB_STATUSES = (
    "won",
    "scheduled",
    "ready_for_yard",
    "picking",
    "staged",
    "loaded",
    "in_progress",
    "completed",
    "requires_invoicing",
)

VISIT_STATUSES = ("scheduled", "in_progress", "completed", "cancelled")

# Timestamp columns stamped when a job enters a status
STATUS_TIMESTAMPS = {
    "ready_for_yard": ("ready_for_yard_at",),
    "picking": ("picking_started_at",),
    "staged": ("picking_completed_at", "staging_completed_at"),
    "loaded": ("loaded_at",),
    "in_progress": ("work_started_at",),
    "completed": ("work_completed_at",),
}

LIST_COLUMNS = """
    *,
    client:clients(id, name, code),
    community:communities(id, name),
    assigned_crew:crews(id, name, code),
    qbo_class:qbo_classes(id, name, bu_type, location_code)
"""

DETAIL_COLUMNS = """
    *,
    client:clients(id, name, code, address_line1, city, state, zip),
    community:communities(id, name),
    property:properties(id, address_line1, city, state, zip),
    assigned_crew:crews(id, name, code, crew_size),
    quote:quotes(id, quote_number, total),
    visits:job_visits(*),
    qbo_class:qbo_classes(id, name, bu_type, location_code)
"""

INVOICE_SOURCE_COLUMNS = """
    *,
    client:clients(id, address_line1, city, state, zip),
    quote:quotes(id, total, tax_rate, tax_amount, discount_amount, subtotal)
"""


@dataclass
class JobFilters:
    status: str | list[str] | None = None
    client_id: str | None = None
    crew_id: str | None = None
    territory_id: str | None = None


@dataclass
class CreateJobData:
    client_id: str
    job_address: dict | None = None
    quote_id: str | None = None
    community_id: str | None = None
    property_id: str | None = None
    product_type: str | None = None
    linear_feet: float | None = None
    description: str | None = None
    special_instructions: str | None = None
    quoted_total: float | None = None
    scheduled_date: str | None = None
    scheduled_time_start: str | None = None
    scheduled_time_end: str | None = None
    estimated_duration_hours: float | None = None
    assigned_crew_id: str | None = None
    assigned_rep_id: str | None = None
    territory_id: str | None = None
    bom_project_id: str | None = None
    project_id: str | None = None
    invoice_group_id: str | None = None


@dataclass
class CreateVisitData:
    job_id: str
    visit_type: str
    scheduled_date: str
    scheduled_time_start: str | None = None
    scheduled_time_end: str | None = None
    assigned_crew_id: str | None = None
    notes: str | None = None


def status_update_values(status: str, now: str) -> dict:
    """Column values for moving a job to status, including its workflow timestamps."""
    values = {"status": status, "status_changed_at": now, "updated_at": now}
    for column in STATUS_TIMESTAMPS.get(status, ()):
        values[column] = now
    return values


def billing_address_for(job: dict) -> dict | None:
    """Client address when the client has one on file, otherwise the job site."""
    client = job.get("client") or {}
    if client.get("address_line1"):
        return {
            "line1": client["address_line1"],
            "city": client.get("city") or "",
            "state": client.get("state") or get_quote_defaults().get("default_state", "TX"),
            "zip": client.get("zip") or "",
        }
    return job.get("job_address")


def invoice_from_job(job: dict, invoice_date: str) -> dict:
    """Build an invoice row from a job and its quote's totals."""
    quote = job.get("quote") or {}
    total = quote.get("total") or job.get("quoted_total") or 0
    return {
        "job_id": job["id"],
        "quote_id": job.get("quote_id"),
        "client_id": job.get("client_id"),
        "billing_address": billing_address_for(job),
        "subtotal": quote.get("subtotal") or job.get("quoted_total") or 0,
        "tax_rate": quote.get("tax_rate") or 0,
        "tax_amount": quote.get("tax_amount") or 0,
        "discount_amount": quote.get("discount_amount") or 0,
        "total": total,
        "amount_paid": 0,
        "balance_due": total,
        "invoice_date": invoice_date,
        "payment_terms": get_quote_defaults().get("payment_terms", "Net 30"),
        "status": "draft",
    }


class JobService(Repository):
    """Reads and writes for jobs and job visits."""

    def list_jobs(self, filters: JobFilters | None = None) -> list[dict]:
        filters = filters or JobFilters()

        def fetch():
            conditions = []
            if filters.status:
                if isinstance(filters.status, (list, tuple)):
                    conditions.append(in_("status", filters.status))
                else:
                    conditions.append(eq("status", filters.status))
            if filters.client_id:
                conditions.append(eq("client_id", filters.client_id))
            if filters.crew_id:
                conditions.append(eq("assigned_crew_id", filters.crew_id))
            if filters.territory_id:
                conditions.append(eq("territory_id", filters.territory_id))
            return self.client.select(
                "jobs", columns=LIST_COLUMNS, filters=conditions, order="created_at", ascending=False
            )

        return self._query(make_key("jobs", filters), fetch)

    def get_job(self, job_id: str | None) -> dict | None:
        if not job_id:
            return None
        return self._query(
            make_key("jobs", job_id),
            lambda: self.client.select_one("jobs", columns=DETAIL_COLUMNS, filters=[eq("id", job_id)]),
        )

    def jobs_by_client(self, client_id: str | None) -> list[dict]:
        if not client_id:
            return []
        return self._query(
            make_key("jobs", "client", client_id),
            lambda: self.client.select(
                "jobs",
                columns="*, community:communities(id, name), assigned_crew:crews(id, name, code)",
                filters=[eq("client_id", client_id)],
                order="created_at",
                ascending=False,
            ),
        )

    def jobs_by_crew(self, crew_id: str | None) -> list[dict]:
        """A crew's jobs in schedule order."""
        if not crew_id:
            return []
        return self._query(
            make_key("jobs", "crew", crew_id),
            lambda: self.client.select(
                "jobs",
                columns="*, client:clients(id, name), community:communities(id, name)",
                filters=[eq("assigned_crew_id", crew_id)],
                order="scheduled_date",
                ascending=True,
            ),
        )

    def create_job(self, data: CreateJobData) -> dict:
        row = {**asdict(data), "status": "won"}
        job = self._mutate(
            lambda: self.client.insert_one("jobs", row),
            failure="Failed to create job",
            invalidate=[("jobs",)],
        )
        self.notifier.success(f"Job {job.get('job_number')} created")
        return job

    def update_job(self, job_id: str, data: dict) -> None:
        values = {**data, "updated_at": self._now()}
        self._mutate(
            lambda: self.client.update("jobs", values, [eq("id", job_id)]),
            success="Job updated",
            failure="Failed to update job",
            invalidate=[("jobs",)],
        )

    def update_job_status(self, job_id: str, status: str, notes: str | None = None) -> None:
        """Move a job to status, stamping the matching workflow timestamp."""
        if status not in JOB_STATUSES:
            raise ValidationError(f"Unknown job status: {status}")

        def run():
            current = self.client.select_one("jobs", columns="status", filters=[eq("id", job_id)], maybe=True)
            self.client.update("jobs", status_update_values(status, self._now()), [eq("id", job_id)])
            self._record_status_history("job", job_id, (current or {}).get("status"), status, notes)

        self._mutate(
            run,
            success="Status updated",
            failure="Failed to update status",
            invalidate=[("jobs",)],
        )

    def schedule_job(
        self,
        job_id: str,
        scheduled_date: str,
        scheduled_time_start: str | None = None,
        scheduled_time_end: str | None = None,
        crew_id: str | None = None,
    ) -> None:
        values = status_update_values("scheduled", self._now())
        values.update({
            "scheduled_date": scheduled_date,
            "scheduled_time_start": scheduled_time_start,
            "scheduled_time_end": scheduled_time_end,
            "assigned_crew_id": crew_id,
        })
        self._mutate(
            lambda: self.client.update("jobs", values, [eq("id", job_id)]),
            success="Job scheduled",
            failure="Failed to schedule job",
            invalidate=[("jobs",)],
        )

    def complete_job(self, job_id: str, notes: str | None = None, photos: list[str] | None = None) -> None:
        values = status_update_values("completed", self._now())
        values.update({"completion_notes": notes, "completion_photos": photos or []})
        self._mutate(
            lambda: self.client.update("jobs", values, [eq("id", job_id)]),
            success="Job completed",
            failure="Failed to complete job",
            invalidate=[("jobs",)],
        )

    def create_invoice_from_job(self, job_id: str) -> dict:
        """
        Invoice a job from its quote totals.

        Custom fields are copied to the invoice (best-effort) and the job moves
        to requires_invoicing with the invoice linked.
        """

        def run():
            job = self.client.select_one("jobs", columns=INVOICE_SOURCE_COLUMNS, filters=[eq("id", job_id)])
            invoice = self.client.insert_one("invoices", invoice_from_job(job, self._today()))
            self._transfer_custom_fields("job", job_id, "invoice", invoice["id"])

            values = status_update_values("requires_invoicing", self._now())
            values["invoice_id"] = invoice["id"]
            self.client.update("jobs", values, [eq("id", job_id)])
            return invoice

        invoice = self._mutate(
            run,
            failure="Failed to create invoice",
            invalidate=[("jobs",), ("invoices",)],
        )
        self.notifier.success(f"Invoice {invoice.get('invoice_number')} created")
        return invoice

    def delete_job(self, job_id: str) -> None:
        self._mutate(
            lambda: self.client.delete("jobs", [eq("id", job_id)]),
            success="Job deleted",
            failure="Failed to delete job",
            invalidate=[("jobs",)],
        )

    # --- Visits ---

    def job_visits(self, job_id: str | None) -> list[dict]:
        if not job_id:
            return []
        return self._query(
            make_key("job-visits", job_id),
            lambda: self.client.select(
                "job_visits",
                columns="*, assigned_crew:crews(id, name, code)",
                filters=[eq("job_id", job_id)],
                order="visit_number",
                ascending=True,
            ),
        )

    def add_job_visit(self, data: CreateVisitData) -> dict:
        """Add a visit numbered after the job's last visit."""

        def run():
            existing = self.client.select(
                "job_visits",
                columns="visit_number",
                filters=[eq("job_id", data.job_id)],
                order="visit_number",
                ascending=False,
                limit=1,
            )
            next_number = ((existing[0].get("visit_number") if existing else 0) or 0) + 1
            return self.client.insert_one("job_visits", {
                **asdict(data),
                "visit_number": next_number,
                "status": "scheduled",
            })

        return self._mutate(
            run,
            success="Visit added",
            failure="Failed to add visit",
            invalidate=[("jobs", data.job_id), ("job-visits", data.job_id)],
        )

    def update_job_visit(self, visit_id: str, data: dict) -> None:
        if data.get("status") and data["status"] not in VISIT_STATUSES:
            raise ValidationError(f"Unknown visit status: {data['status']}")
        self._mutate(
            lambda: self.client.update("job_visits", data, [eq("id", visit_id)]),
            failure="Failed to update visit",
            invalidate=[("jobs",), ("job-visits",)],
        )

    def complete_job_visit(self, visit_id: str, notes: str | None = None, photos: list[str] | None = None) -> None:
        self._mutate(
            lambda: self.client.update(
                "job_visits",
                {
                    "status": "completed",
                    "completed_at": self._now(),
                    "notes": notes,
                    "photos": photos or [],
                },
                [eq("id", visit_id)],
            ),
            success="Visit completed",
            failure="Failed to complete visit",
            invalidate=[("jobs",), ("job-visits",)],
        )
