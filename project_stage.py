"""
Derive where a project actually is in the field-service pipeline.

NEW -> QUOTING -> WON -> SCHEDULED -> WORKING -> WORK DONE -> INVOICED -> PAID -> COMPLETE

The stored project status only says active/complete; the stage is computed
from the quote, job and invoice aggregates on the v_projects_full row.
Stored statuses cancelled, on_hold, warranty and complete override the
computed stage.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class PipelineStage:
    id: str
    label: str
    short_label: str
    description: str
    order: int


@dataclass(frozen=True)
class NextAction:
    action: str
    description: str
    priority: str  # high | normal | low
    icon_hint: str


@dataclass
class ComputedStage:
    stage: PipelineStage
    detail: str | None = None
    progress: int | None = None
    has_warning: bool = False
    warning_message: str | None = None
    next_action: NextAction | None = None


PIPELINE_STAGES = {
    "new": PipelineStage("new", "New", "New", "Project created, no quotes yet", 1),
    "quoting": PipelineStage("quoting", "Quoting", "Quote", "Quote(s) sent, awaiting approval", 2),
    "won": PipelineStage("won", "Won", "Won", "Quote accepted, ready to schedule", 3),
    "scheduled": PipelineStage("scheduled", "Scheduled", "Sched", "Job(s) scheduled, work not started", 4),
    "working": PipelineStage("working", "In Progress", "Work", "Work is in progress", 5),
    "work_done": PipelineStage("work_done", "Work Done", "Done", "All work complete, ready to invoice", 6),
    "invoiced": PipelineStage("invoiced", "Invoiced", "Inv", "Invoice sent, awaiting payment", 7),
    "paid": PipelineStage("paid", "Paid", "Paid", "Fully paid", 8),
    "complete": PipelineStage("complete", "Complete", "Done", "Project closed and archived", 9),
    "on_hold": PipelineStage("on_hold", "On Hold", "Hold", "Project paused", 0),
    "cancelled": PipelineStage("cancelled", "Cancelled", "Cancel", "Project cancelled", 0),
    "warranty": PipelineStage("warranty", "Warranty", "Warranty", "Warranty work in progress", 10),
}

OVERRIDE_STATUSES = ("cancelled", "on_hold", "warranty", "complete")


def _first(project: dict, *keys: str, default=0):
    """First non-None value among keys (view column, then fallback column)."""
    for key in keys:
        value = project.get(key)
        if value is not None:
            return value
    return default


def _money(amount: float) -> str:
    if float(amount).is_integer():
        return f"${amount:,.0f}"
    return f"${amount:,.2f}"


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'s' if count > 1 else ''}"


def compute_project_stage(project: dict) -> ComputedStage:
    """Compute the pipeline stage for a project row (preferably from v_projects_full)."""
    status = project.get("status")
    if status in OVERRIDE_STATUSES:
        return ComputedStage(stage=PIPELINE_STAGES[status])

    quote_count = _first(project, "cnt_quotes", "quote_count")
    job_count = _first(project, "cnt_jobs", "job_count")
    active_job_count = _first(project, "cnt_active_jobs")
    invoice_count = _first(project, "cnt_invoices", "invoice_count")
    unpaid_invoice_count = _first(project, "cnt_unpaid_invoices")
    total_invoiced = _first(project, "sum_invoiced", "total_invoiced")
    total_paid = _first(project, "sum_paid", "total_paid")
    balance_due = _first(project, "sum_balance_due", default=total_invoiced - total_paid)
    has_accepted_quote = bool(project.get("accepted_quote_id"))

    # Most advanced stage first
    if invoice_count > 0 and unpaid_invoice_count == 0 and balance_due <= 0:
        return ComputedStage(
            stage=PIPELINE_STAGES["paid"],
            detail=f"{_money(total_paid)} collected",
            next_action=NextAction("Close Project", "Mark project as complete", "low", "complete"),
        )

    if invoice_count > 0:
        paid_percent = round(total_paid / total_invoiced * 100) if total_invoiced > 0 else 0
        has_warning = balance_due > 0 and paid_percent < 50
        return ComputedStage(
            stage=PIPELINE_STAGES["invoiced"],
            detail=f"{paid_percent}% paid" if paid_percent > 0 else f"{_money(balance_due)} due",
            progress=paid_percent,
            has_warning=has_warning,
            warning_message="Awaiting significant payment" if has_warning else None,
            next_action=NextAction(
                "Collect Payment",
                f"{_money(balance_due)} outstanding",
                "high" if has_warning else "normal",
                "collect",
            ),
        )

    if job_count > 0 and active_job_count == 0:
        return ComputedStage(
            stage=PIPELINE_STAGES["work_done"],
            detail=f"{_plural(job_count, 'job')} complete",
            has_warning=True,
            warning_message="Ready to invoice",
            next_action=NextAction("Create Invoice", "Work complete, ready to bill", "high", "invoice"),
        )

    if job_count > 0 and active_job_count > 0:
        completed = job_count - active_job_count
        return ComputedStage(
            stage=PIPELINE_STAGES["working"],
            detail=f"{completed}/{job_count} done" if completed > 0 else f"{active_job_count} active",
            progress=round(completed / job_count * 100),
            next_action=NextAction(
                "Monitor Progress", f"{_plural(active_job_count, 'job')} in progress", "normal", "none"
            ),
        )

    # Jobs exist but the view does not expose schedule dates, so any
    # non-active job counts as scheduled.
    if job_count > 0:
        return ComputedStage(
            stage=PIPELINE_STAGES["scheduled"],
            detail=_plural(job_count, "job"),
            next_action=NextAction("Prepare Materials", "Jobs scheduled, prep for work", "normal", "none"),
        )

    if has_accepted_quote:
        return ComputedStage(
            stage=PIPELINE_STAGES["won"],
            detail="Ready to schedule",
            has_warning=True,
            warning_message="Create job to continue",
            next_action=NextAction("Create Job", "Quote accepted, schedule work", "high", "create"),
        )

    if quote_count > 0:
        return ComputedStage(
            stage=PIPELINE_STAGES["quoting"],
            detail=f"{_plural(quote_count, 'quote')} pending",
            next_action=NextAction("Follow Up", "Quote sent, awaiting approval", "normal", "followup"),
        )

    return ComputedStage(
        stage=PIPELINE_STAGES["new"],
        detail="No quotes",
        next_action=NextAction("Create Quote", "No quotes yet", "high", "create"),
    )


def sort_by_pipeline_stage(projects: list[dict], ascending: bool = False) -> list[dict]:
    """Sort projects by computed stage, most advanced first by default."""
    return sorted(
        projects,
        key=lambda p: compute_project_stage(p).stage.order,
        reverse=not ascending,
    )
