"""
Service request data access: intake, assessments, and conversion of a
request into a quote or directly into a job.
"""

import logging
from dataclasses import dataclass, field

from backend_client import eq, gte, in_, lte
from errors import ValidationError
from query_cache import make_key
from repository import Repository
from utils import get_quote_defaults

logger = logging.getLogger(__name__)

REQUEST_STATUSES = (
    "pending",
    "assessment_scheduled",
    "assessment_today",
    "assessment_overdue",
    "assessment_completed",
    "converted",
    "archived",
)

REQUEST_TYPES = ("new_quote", "repair", "warranty")

LIST_COLUMNS = """
    *,
    client:clients(id, name),
    community:communities(id, name),
    property:properties(id, address_line1),
    assigned_rep:sales_reps!service_requests_assigned_rep_id_fkey(id, name),
    assessment_rep:sales_reps!service_requests_assessment_rep_id_fkey(id, name),
    qbo_class:qbo_classes(id, name, bu_type, location_code)
"""

DETAIL_COLUMNS = """
    *,
    client:clients(id, name, code),
    community:communities(id, name),
    property:properties(id, address_line1, lot_number),
    assigned_rep:sales_reps!service_requests_assigned_rep_id_fkey(id, name, email, phone),
    assessment_rep:sales_reps!service_requests_assessment_rep_id_fkey(id, name, email, phone),
    territory:territories(id, name, code),
    qbo_class:qbo_classes(id, name, bu_type, location_code)
"""

CONVERT_COLUMNS = (
    "*, client:clients(id, name, billing_address_line1, billing_city, billing_state, billing_zip)"
)

# Free-text fields trimmed (and blank -> None) before they are written
TEXT_FIELDS = (
    "contact_name",
    "contact_email",
    "contact_phone",
    "address_line1",
    "city",
    "zip",
    "description",
    "notes",
)


@dataclass
class RequestFilters:
    status: str | list[str] | None = None
    client_id: str | None = None
    assigned_rep_id: str | None = None
    territory_id: str | None = None
    date_from: str | None = None
    date_to: str | None = None


@dataclass
class RequestFormData:
    source: str
    client_id: str | None = None
    community_id: str | None = None
    property_id: str | None = None
    contact_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    address_line1: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    request_type: str | None = None
    product_types: list[str] = field(default_factory=list)
    linear_feet_estimate: float | None = None
    description: str | None = None
    notes: str | None = None
    requires_assessment: bool = True
    assessment_scheduled_at: str | None = None
    business_unit_id: str | None = None
    assigned_rep_id: str | None = None
    territory_id: str | None = None
    priority: str | None = None


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def clean_request_fields(data: dict) -> dict:
    """Trim free text and turn blank strings into None."""
    cleaned = dict(data)
    for name in TEXT_FIELDS:
        if name in cleaned:
            cleaned[name] = _clean_text(cleaned[name])
    if "linear_feet_estimate" in cleaned and cleaned["linear_feet_estimate"] not in (None, ""):
        cleaned["linear_feet_estimate"] = float(cleaned["linear_feet_estimate"])
    elif "linear_feet_estimate" in cleaned:
        cleaned["linear_feet_estimate"] = None
    return cleaned


def initial_status(data: RequestFormData) -> str:
    """Requests with a booked site assessment start as assessment_scheduled."""
    if data.requires_assessment and data.assessment_scheduled_at:
        return "assessment_scheduled"
    return "pending"


def _address(line1: str | None, city: str | None, state: str | None, zip_code: str | None) -> dict:
    return {
        "line1": line1 or "",
        "city": city or "",
        "state": state or get_quote_defaults().get("default_state", "TX"),
        "zip": zip_code or "",
    }


class ServiceRequestService(Repository):
    """Reads and writes for service requests."""

    def list_requests(self, filters: RequestFilters | None = None) -> list[dict]:
        filters = filters or RequestFilters()

        def fetch():
            conditions = []
            if filters.status:
                if isinstance(filters.status, (list, tuple)):
                    conditions.append(in_("status", filters.status))
                else:
                    conditions.append(eq("status", filters.status))
            if filters.client_id:
                conditions.append(eq("client_id", filters.client_id))
            if filters.assigned_rep_id:
                conditions.append(eq("assigned_rep_id", filters.assigned_rep_id))
            if filters.territory_id:
                conditions.append(eq("territory_id", filters.territory_id))
            if filters.date_from:
                conditions.append(gte("created_at", filters.date_from))
            if filters.date_to:
                conditions.append(lte("created_at", filters.date_to))
            return self.client.select(
                "service_requests", columns=LIST_COLUMNS, filters=conditions, order="created_at", ascending=False
            )

        return self._query(make_key("service_requests", filters), fetch)

    def get_request(self, request_id: str | None) -> dict | None:
        if not request_id:
            return None
        return self._query(
            make_key("service_requests", request_id),
            lambda: self.client.select_one(
                "service_requests", columns=DETAIL_COLUMNS, filters=[eq("id", request_id)]
            ),
        )

    def create_request(self, data: RequestFormData) -> dict:
        if data.request_type and data.request_type not in REQUEST_TYPES:
            raise ValidationError(f"Unknown request type: {data.request_type}")

        row = clean_request_fields({
            "client_id": data.client_id,
            "community_id": data.community_id,
            "property_id": data.property_id,
            "contact_name": data.contact_name,
            "contact_email": data.contact_email,
            "contact_phone": data.contact_phone,
            "address_line1": data.address_line1,
            "city": data.city,
            "state": data.state or get_quote_defaults().get("default_state", "TX"),
            "zip": data.zip,
            "source": data.source,
            "request_type": data.request_type or "new_quote",
            "product_types": data.product_types or [],
            "linear_feet_estimate": data.linear_feet_estimate,
            "description": data.description,
            "notes": data.notes,
            "requires_assessment": data.requires_assessment,
            "assessment_scheduled_at": data.assessment_scheduled_at,
            "business_unit_id": data.business_unit_id,
            "assigned_rep_id": data.assigned_rep_id,
            "territory_id": data.territory_id,
            "priority": data.priority,
            "status": initial_status(data),
        })
        request = self._mutate(
            lambda: self.client.insert_one("service_requests", row),
            failure="Failed to create request",
            invalidate=[("service_requests",)],
        )
        self.notifier.success(f"Request {request.get('request_number')} created")
        return request

    def update_request(self, request_id: str, data: dict) -> None:
        """Update only the fields provided."""
        values = {**clean_request_fields(data), "updated_at": self._now()}
        self._mutate(
            lambda: self.client.update("service_requests", values, [eq("id", request_id)]),
            success="Request updated",
            failure="Failed to update request",
            invalidate=[("service_requests",)],
        )

    def update_request_status(self, request_id: str, status: str, notes: str | None = None) -> None:
        if status not in REQUEST_STATUSES:
            raise ValidationError(f"Unknown request status: {status}")

        def run():
            current = self.client.select_one(
                "service_requests", columns="status", filters=[eq("id", request_id)], maybe=True
            )
            now = self._now()
            self.client.update(
                "service_requests",
                {"status": status, "status_changed_at": now, "updated_at": now},
                [eq("id", request_id)],
            )
            self._record_status_history("request", request_id, (current or {}).get("status"), status, notes)

        self._mutate(
            run,
            success="Status updated",
            failure="Failed to update status",
            invalidate=[("service_requests",)],
        )

    def schedule_assessment(self, request_id: str, scheduled_at: str, rep_id: str | None = None) -> None:
        now = self._now()
        self._mutate(
            lambda: self.client.update(
                "service_requests",
                {
                    "assessment_scheduled_at": scheduled_at,
                    "assessment_rep_id": rep_id,
                    "status": "assessment_scheduled",
                    "status_changed_at": now,
                    "updated_at": now,
                },
                [eq("id", request_id)],
            ),
            success="Assessment scheduled",
            failure="Failed to schedule assessment",
            invalidate=[("service_requests",)],
        )

    def complete_assessment(self, request_id: str, notes: str | None = None) -> None:
        now = self._now()
        self._mutate(
            lambda: self.client.update(
                "service_requests",
                {
                    "assessment_completed_at": now,
                    "assessment_notes": notes,
                    "status": "assessment_completed",
                    "status_changed_at": now,
                    "updated_at": now,
                },
                [eq("id", request_id)],
            ),
            success="Assessment completed",
            failure="Failed to complete assessment",
            invalidate=[("service_requests",)],
        )

    def delete_request(self, request_id: str) -> None:
        self._mutate(
            lambda: self.client.delete("service_requests", [eq("id", request_id)]),
            success="Request deleted",
            failure="Failed to delete request",
            invalidate=[("service_requests",)],
        )

    def _mark_converted(self, request: dict, link: dict, notes: str) -> None:
        now = self._now()
        self.client.update(
            "service_requests",
            {"status": "converted", "status_changed_at": now, "updated_at": now, **link},
            [eq("id", request["id"])],
        )
        self._record_status_history("request", request["id"], request.get("status"), "converted", notes)

    def convert_request_to_quote(self, request_id: str) -> dict:
        """Create a draft quote from a request and mark the request converted."""

        def run():
            request = self.client.select_one("service_requests", columns=CONVERT_COLUMNS, filters=[eq("id", request_id)])
            client = request.get("client") or {}

            job_address = None
            if request.get("address_line1"):
                job_address = _address(request["address_line1"], request.get("city"), request.get("state"), request.get("zip"))
            billing_address = None
            if client.get("billing_address_line1"):
                billing_address = _address(
                    client["billing_address_line1"],
                    client.get("billing_city"),
                    client.get("billing_state"),
                    client.get("billing_zip"),
                )

            quote = self.client.insert_one("quotes", {
                "request_id": request_id,
                "project_id": request.get("project_id"),
                "client_id": request.get("client_id"),
                "community_id": request.get("community_id"),
                "property_id": request.get("property_id"),
                "job_address": job_address,
                "billing_address": billing_address,
                "product_type": request.get("product_type"),
                "linear_feet": request.get("linear_feet_estimate"),
                "scope_summary": request.get("description"),
                "sales_rep_id": request.get("assigned_rep_id"),
                "status": "draft",
            })
            self._mark_converted(
                request, {"converted_to_quote_id": quote["id"]}, f"Converted to Quote #{quote.get('quote_number')}"
            )
            return quote

        quote = self._mutate(
            run,
            failure="Failed to convert request",
            invalidate=[("service_requests",), ("quotes",)],
        )
        self.notifier.success(f"Quote {quote.get('quote_number')} created from request")
        return quote

    def convert_request_to_job(self, request_id: str) -> dict:
        """
        Skip the quote and create a job straight from a request.

        A project is created first when the request has none. The request must
        have a client.
        """

        def run():
            request = self.client.select_one("service_requests", columns=CONVERT_COLUMNS, filters=[eq("id", request_id)])
            if not request.get("client_id"):
                raise ValidationError("Request must have a client assigned to convert directly to a job")

            project_id = request.get("project_id")
            if not project_id:
                project = self.client.insert_one("projects", {
                    "client_id": request["client_id"],
                    "community_id": request.get("community_id"),
                    "property_id": request.get("property_id"),
                    "territory_id": request.get("territory_id"),
                    "source_request_id": request_id,
                    "name": request.get("contact_name") or request.get("address_line1") or "Service request",
                    "status": "active",
                })
                project_id = project["id"]
                self.client.update("service_requests", {"project_id": project_id}, [eq("id", request_id)])

            job = self.client.insert_one("jobs", {
                "project_id": project_id,
                "request_id": request_id,
                "client_id": request["client_id"],
                "community_id": request.get("community_id"),
                "property_id": request.get("property_id"),
                "job_address": _address(request.get("address_line1"), request.get("city"), request.get("state"), request.get("zip")),
                "product_type": request.get("product_type"),
                "linear_feet": request.get("linear_feet_estimate"),
                "description": request.get("description"),
                "territory_id": request.get("territory_id"),
                "status": "won",
            })
            self._mark_converted(
                request, {"converted_to_job_id": job["id"]}, f"Converted directly to Job #{job.get('job_number')}"
            )
            return job

        job = self._mutate(
            run,
            failure="Failed to convert request",
            invalidate=[("service_requests",), ("jobs",), ("projects",)],
        )
        self.notifier.success(f"Job {job.get('job_number')} created from request")
        return job
