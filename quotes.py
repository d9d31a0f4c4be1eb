"""
Quote data access: list/detail reads, status changes, versioning
(change orders, alternatives, revisions), manager approval, and the
pure totals/approval helpers used when saving a quote.
"""

import logging
from dataclasses import dataclass, field, asdict

from backend_client import (
    BackendError,
    RpcNotFoundError,
    eq,
    gte,
    in_,
    is_null,
    lte,
    neq,
)
from errors import ValidationError
from query_cache import make_key
from repository import Repository
from utils import get_approval_thresholds, get_quote_defaults, round_money

logger = logging.getLogger(__name__)

QUOTE_STATUSES = (
    "draft",
    "pending_approval",
    "sent",
    "follow_up",
    "changes_requested",
    "approved",
    "converted",
    "lost",
)

QUOTE_TYPES = ("original", "change_order", "warranty", "revision")

SENT_METHODS = ("email", "client_hub", "print", "manual")

LIST_COLUMNS = """
    *,
    client:clients(id, name, code),
    community:communities(id, name),
    qbo_class:qbo_classes(id, name, bu_type, location_code, labor_code)
"""

DETAIL_COLUMNS = """
    *,
    client:clients(id, name, code, address_line1, city, state, zip, primary_contact_email, primary_contact_phone, primary_contact_name),
    community:communities(id, name),
    property:properties(id, address_line1, city, state, zip),
    request:service_requests(id, request_number),
    line_items:quote_line_items(*),
    qbo_class:qbo_classes(id, name, bu_type, location_code, labor_code)
"""

ALTERNATIVE_COLUMNS = (
    "id, quote_number, status, total, is_alternative, scope_summary, "
    "created_at, client_accepted_at, archived_at"
)

# Fields carried from an existing quote onto an alternative or revision
COPIED_FIELDS = (
    "project_id",
    "request_id",
    "client_id",
    "community_id",
    "property_id",
    "billing_address",
    "job_address",
    "product_type",
    "linear_feet",
    "scope_summary",
    "valid_until",
    "payment_terms",
    "sales_rep_user_id",
)

# Quote-level money fields a revision keeps so it prices the same as its source
REVISION_PRICING_FIELDS = (
    "qbo_class_id",
    "bom_project_id",
    "discount_percent",
    "tax_rate",
    "deposit_percent",
    "deposit_required",
)

LINE_ITEM_SKIP_FIELDS = {"id", "quote_id", "created_at", "updated_at"}

INVALIDATES = [("quotes",), ("project_quotes",)]


@dataclass
class QuoteFilters:
    """Filters for list_quotes. status may be one value or a list."""
    status: str | list[str] | None = None
    client_id: str | None = None
    sales_rep_id: str | None = None  # user_id of the rep
    date_from: str | None = None
    date_to: str | None = None


@dataclass
class CreateQuoteData:
    """Payload for create_quote."""
    client_id: str
    request_id: str | None = None
    project_id: str | None = None
    bom_project_id: str | None = None
    community_id: str | None = None
    property_id: str | None = None
    billing_address: dict | None = None
    job_address: dict | None = None
    product_type: str | None = None
    linear_feet: float | None = None
    scope_summary: str | None = None
    valid_until: str | None = None
    payment_terms: str | None = None
    deposit_required: float | None = None
    deposit_percent: float | None = None
    sales_rep_id: str | None = None
    quote_type: str | None = None
    quote_group: str | None = None
    is_alternative: bool = False


@dataclass
class CreateChangeOrderData:
    """Payload for create_change_order. Change orders skip the request step."""
    project_id: str
    client_id: str
    community_id: str | None = None
    property_id: str | None = None
    billing_address: dict | None = None
    job_address: dict | None = None
    scope_summary: str | None = None
    sales_rep_id: str | None = None


@dataclass
class QuoteTotals:
    subtotal: float = 0.0
    material_cost: float = 0.0
    labor_cost: float = 0.0
    discount_amount: float = 0.0
    taxable_amount: float = 0.0
    tax_amount: float = 0.0
    total: float = 0.0
    gross_profit: float = 0.0
    margin_percent: float = 0.0
    deposit_amount: float = 0.0
    item_count: int = 0
    approval_reasons: list[str] = field(default_factory=list)

    @property
    def needs_approval(self) -> bool:
        return bool(self.approval_reasons)

    def to_quote_fields(self) -> dict:
        """Column values written back onto the quote row."""
        return {
            "subtotal": round_money(self.subtotal),
            "discount_amount": round_money(self.discount_amount),
            "tax_amount": round_money(self.tax_amount),
            "total": round_money(self.total),
            "total_material_cost": round_money(self.material_cost),
            "total_labor_cost": round_money(self.labor_cost),
            "margin_percent": round(self.margin_percent, 2),
            "requires_approval": self.needs_approval,
            "approval_reason": "; ".join(self.approval_reasons) if self.approval_reasons else None,
        }


def _counts_toward_total(item: dict) -> bool:
    if item.get("is_deleted"):
        return False
    # Optional items only count once the customer selects them
    if item.get("is_optional") and not item.get("is_selected"):
        return False
    return True


def calculate_quote_totals(
    line_items: list[dict],
    discount_percent: float = 0,
    tax_rate_percent: float = 0,
    deposit_percent: float = 0,
) -> QuoteTotals:
    """
    Compute quote money totals from line items.

    Material cost uses material_unit_cost, falling back to unit_cost; labor cost
    uses labor_unit_cost. Margin is gross profit over total, clamped to the
    numeric(5,2) column range.
    """
    active = [item for item in line_items if _counts_toward_total(item)]

    subtotal = 0.0
    material_cost = 0.0
    labor_cost = 0.0
    for item in active:
        qty = float(item.get("quantity") or 0)
        subtotal += qty * float(item.get("unit_price") or 0)
        material_unit = item.get("material_unit_cost")
        if material_unit is None:
            material_unit = item.get("unit_cost")
        material_cost += qty * float(material_unit or 0)
        labor_cost += qty * float(item.get("labor_unit_cost") or 0)

    discount_percent = float(discount_percent or 0)
    discount_amount = subtotal * discount_percent / 100
    taxable_amount = subtotal - discount_amount
    tax_amount = taxable_amount * float(tax_rate_percent or 0) / 100
    total = taxable_amount + tax_amount
    gross_profit = total - material_cost - labor_cost
    raw_margin = (gross_profit / total * 100) if total > 0 else 0.0
    margin = max(-999.99, min(999.99, raw_margin))

    totals = QuoteTotals(
        subtotal=subtotal,
        material_cost=material_cost,
        labor_cost=labor_cost,
        discount_amount=discount_amount,
        taxable_amount=taxable_amount,
        tax_amount=tax_amount,
        total=total,
        gross_profit=gross_profit,
        margin_percent=margin,
        deposit_amount=total * float(deposit_percent or 0) / 100,
        item_count=len(active),
    )
    totals.approval_reasons = approval_reasons(totals, discount_percent, len(active))
    return totals


def approval_reasons(totals: QuoteTotals, discount_percent: float, item_count: int) -> list[str]:
    """Reasons a quote needs manager approval before it can be sent."""
    thresholds = get_approval_thresholds()
    min_margin = thresholds.get("min_margin_percent", 15)
    max_discount = thresholds.get("max_discount_percent", 10)
    max_total = thresholds.get("max_total", 25000)

    reasons = []
    if totals.margin_percent < min_margin and item_count > 0:
        reasons.append(f"Margin ({totals.margin_percent:.1f}%) below {min_margin:g}%")
    if float(discount_percent or 0) > max_discount:
        reasons.append(f"Discount ({float(discount_percent):g}%) exceeds {max_discount:g}%")
    if totals.total > max_total:
        reasons.append(f"Total (${totals.total:,.2f}) exceeds ${max_total:,.0f}")
    return reasons


class QuoteService(Repository):
    """Reads and writes for quotes and quote line items."""

    def _with_sales_reps(self, quotes: list[dict]) -> list[dict]:
        users = self._fetch_user_profiles(q.get("sales_rep_user_id") for q in quotes)
        merged = []
        for quote in quotes:
            rep = users.get(quote.get("sales_rep_user_id"))
            merged.append({**quote, "sales_rep_user": rep.to_dict() if rep else None})
        return merged

    # --- Reads ---

    def list_quotes(self, filters: QuoteFilters | None = None) -> list[dict]:
        """Quotes newest first, with client/community/class joins and the sales rep."""
        filters = filters or QuoteFilters()

        def fetch():
            conditions = []
            if filters.status:
                if isinstance(filters.status, (list, tuple)):
                    conditions.append(in_("status", filters.status))
                else:
                    conditions.append(eq("status", filters.status))
            if filters.client_id:
                conditions.append(eq("client_id", filters.client_id))
            if filters.sales_rep_id:
                conditions.append(eq("sales_rep_user_id", filters.sales_rep_id))
            if filters.date_from:
                conditions.append(gte("created_at", filters.date_from))
            if filters.date_to:
                conditions.append(lte("created_at", filters.date_to))

            rows = self.client.select(
                "quotes",
                columns=LIST_COLUMNS,
                filters=conditions,
                order="created_at",
                ascending=False,
            )
            return self._with_sales_reps(rows)

        return self._query(make_key("quotes", filters), fetch)

    def get_quote(self, quote_id: str | None) -> dict | None:
        """Quote with line items and joins. None for a falsy id."""
        if not quote_id:
            return None

        def fetch():
            row = self.client.select_one("quotes", columns=DETAIL_COLUMNS, filters=[eq("id", quote_id)])
            return self._with_sales_reps([row])[0]

        return self._query(make_key("quotes", quote_id), fetch)

    def quotes_by_client(self, client_id: str | None) -> list[dict]:
        if not client_id:
            return []

        def fetch():
            rows = self.client.select(
                "quotes",
                columns="*, community:communities(id, name)",
                filters=[eq("client_id", client_id)],
                order="created_at",
                ascending=False,
            )
            return self._with_sales_reps(rows)

        return self._query(make_key("quotes", "client", client_id), fetch)

    def quote_alternatives(self, quote_group: str | None) -> list[dict]:
        """All quotes sharing a quote_group, oldest first."""
        if not quote_group:
            return []
        return self._query(
            make_key("quote_alternatives", quote_group),
            lambda: self.client.select(
                "quotes",
                columns=ALTERNATIVE_COLUMNS,
                filters=[eq("quote_group", quote_group)],
                order="created_at",
                ascending=True,
            ),
        )

    # --- Writes ---

    def create_quote(self, data: CreateQuoteData) -> dict:
        if data.quote_type and data.quote_type not in QUOTE_TYPES:
            raise ValidationError(f"Unknown quote type: {data.quote_type}")

        defaults = get_quote_defaults()
        row = {
            "request_id": data.request_id,
            "project_id": data.project_id,
            "bom_project_id": data.bom_project_id,
            "client_id": data.client_id,
            "community_id": data.community_id,
            "property_id": data.property_id,
            "billing_address": data.billing_address,
            "job_address": data.job_address,
            "product_type": data.product_type,
            "linear_feet": data.linear_feet,
            "scope_summary": data.scope_summary,
            "valid_until": data.valid_until,
            "payment_terms": data.payment_terms or defaults.get("payment_terms", "Net 30"),
            "deposit_required": data.deposit_required or 0,
            "deposit_percent": data.deposit_percent or 0,
            "sales_rep_user_id": data.sales_rep_id,
            "status": "draft",
            "quote_type": data.quote_type or "original",
            "quote_group": data.quote_group,
            "is_alternative": data.is_alternative,
        }
        return self._mutate(
            lambda: self.client.insert_one("quotes", row),
            success="Quote created",
            failure="Failed to create quote",
            invalidate=INVALIDATES,
        )

    def update_quote(self, quote_id: str, data: dict) -> dict | None:
        values = {**data, "updated_at": self._now()}

        def run():
            rows = self.client.update("quotes", values, [eq("id", quote_id)])
            return rows[0] if rows else None

        return self._mutate(
            run,
            success="Quote updated",
            failure="Failed to update quote",
            invalidate=INVALIDATES,
        )

    def save_totals(self, quote_id: str, totals: QuoteTotals) -> dict | None:
        """Write computed totals and approval flags onto the quote."""
        return self.update_quote(quote_id, totals.to_quote_fields())

    def update_quote_status(self, quote_id: str, status: str, notes: str | None = None) -> None:
        """Change status and append a status history row."""
        if status not in QUOTE_STATUSES:
            raise ValidationError(f"Unknown quote status: {status}")

        def run():
            current = self.client.select_one("quotes", columns="status", filters=[eq("id", quote_id)])
            now = self._now()
            self.client.update(
                "quotes",
                {"status": status, "status_changed_at": now, "updated_at": now},
                [eq("id", quote_id)],
            )
            self._record_status_history("quote", quote_id, current.get("status"), status, notes)

        self._mutate(
            run,
            success="Quote status updated",
            failure="Failed to update quote status",
            invalidate=[("quotes",)],
        )

    def send_quote(self, quote_id: str, method: str, email: str | None = None) -> None:
        if method not in SENT_METHODS:
            raise ValidationError(f"Unknown send method: {method}")
        now = self._now()
        self._mutate(
            lambda: self.client.update(
                "quotes",
                {
                    "status": "sent",
                    "status_changed_at": now,
                    "sent_at": now,
                    "sent_method": method,
                    "sent_to_email": email,
                    "updated_at": now,
                },
                [eq("id", quote_id)],
            ),
            success="Quote sent",
            failure="Failed to send quote",
            invalidate=[("quotes",)],
        )

    def approve_quote(self, quote_id: str, notes: str | None = None) -> None:
        """Record client acceptance; the backend computes the resulting status."""
        now = self._now()
        self._mutate(
            lambda: self.client.update(
                "quotes",
                {
                    "approval_status": "approved",
                    "client_accepted_at": now,
                    "approval_notes": notes,
                    "updated_at": now,
                },
                [eq("id", quote_id)],
            ),
            success="Quote approved",
            failure="Failed to approve quote",
            invalidate=[("quotes",)],
        )

    def accept_quote(self, quote_id: str, accepted_by: str | None = None):
        """
        Accept a quote and decline its alternatives.

        Uses the accept_quote stored procedure. When the procedure is not
        deployed, the same outcome is reached with sequential updates: the
        quote is marked approved, then every other live quote in its group is
        marked lost.
        """

        def manual_accept():
            quote = self.client.select_one(
                "quotes", columns="id, quote_group", filters=[eq("id", quote_id)]
            )
            now = self._now()
            rows = self.client.update(
                "quotes",
                {
                    "approval_status": "approved",
                    "client_accepted_at": now,
                    "status": "approved",
                    "status_changed_at": now,
                    "updated_at": now,
                },
                [eq("id", quote_id)],
            )
            if quote.get("quote_group"):
                self.client.update(
                    "quotes",
                    {"status": "lost", "status_changed_at": now, "updated_at": now},
                    [
                        eq("quote_group", quote["quote_group"]),
                        neq("id", quote_id),
                        is_null("archived_at"),
                    ],
                )
            return rows[0] if rows else None

        def run():
            try:
                return self.client.rpc("accept_quote", {
                    "p_quote_id": quote_id,
                    "p_accepted_by": accepted_by or self.client.current_user_id(),
                })
            except RpcNotFoundError:
                logger.warning("accept_quote procedure not available, accepting manually")
                return manual_accept()

        return self._mutate(
            run,
            success="Quote accepted",
            failure="Failed to accept quote",
            invalidate=INVALIDATES + [("quote_alternatives",)],
        )

    def convert_quote_to_job(self, quote_id: str) -> dict:
        """Create a job from a quote. The backend flips the quote to converted."""

        def run():
            quote = self.client.select_one("quotes", filters=[eq("id", quote_id)])
            job = self.client.insert_one("jobs", {
                "quote_id": quote_id,
                "client_id": quote.get("client_id"),
                "community_id": quote.get("community_id"),
                "property_id": quote.get("property_id"),
                "job_address": quote.get("job_address") or {},
                "product_type": quote.get("product_type"),
                "linear_feet": quote.get("linear_feet"),
                "description": quote.get("scope_summary"),
                "quoted_total": quote.get("total"),
                "bom_project_id": quote.get("bom_project_id"),
            })
            self._transfer_custom_fields("quote", quote_id, "job", job["id"])
            return job

        job = self._mutate(
            run,
            failure="Failed to convert quote",
            invalidate=[("quotes",), ("jobs",)],
        )
        self.notifier.success(f"Job {job.get('job_number')} created from quote")
        return job

    def delete_quote(self, quote_id: str) -> None:
        self._mutate(
            lambda: self.client.delete("quotes", [eq("id", quote_id)]),
            success="Quote deleted",
            failure="Failed to delete quote",
            invalidate=[("quotes",)],
        )

    # --- Line items ---

    def add_line_item(self, quote_id: str, item: dict) -> dict:
        row = {**item, "quote_id": quote_id}
        return self._mutate(
            lambda: self.client.insert_one("quote_line_items", row),
            failure="Failed to add line item",
            invalidate=[("quotes", quote_id), ("project_quotes",)],
        )

    def update_line_item(self, item_id: str, data: dict) -> None:
        self._mutate(
            lambda: self.client.update("quote_line_items", data, [eq("id", item_id)]),
            failure="Failed to update line item",
            invalidate=INVALIDATES,
        )

    def toggle_optional_line_item(self, item_id: str, is_selected: bool) -> None:
        """Select or deselect an optional item. Only selected items count toward the total."""
        self._mutate(
            lambda: self.client.update(
                "quote_line_items", {"is_selected": is_selected}, [eq("id", item_id)]
            ),
            failure="Failed to toggle optional item",
            invalidate=INVALIDATES,
        )

    def delete_line_item(self, item_id: str) -> None:
        self._mutate(
            lambda: self.client.delete("quote_line_items", [eq("id", item_id)]),
            failure="Failed to delete line item",
            invalidate=INVALIDATES,
        )

    # --- Versioning ---

    def create_change_order(self, data: CreateChangeOrderData) -> dict:
        row = {**asdict(data), "status": "draft", "quote_type": "change_order"}
        row["sales_rep_user_id"] = row.pop("sales_rep_id")

        result = self._mutate(
            lambda: self.client.insert_one("quotes", row),
            failure="Failed to create change order",
            invalidate=INVALIDATES,
        )
        self.notifier.success(f"Change Order {result.get('quote_number')} created")
        return result

    def _ensure_group(self, original: dict) -> str:
        """Return the original's quote_group, assigning its own id when it has none."""
        group = original.get("quote_group") or original["id"]
        if not original.get("quote_group"):
            self.client.update("quotes", {"quote_group": group}, [eq("id", original["id"])])
        return group

    def create_alternative_quote(self, original_quote_id: str, scope_summary: str | None = None) -> dict:
        """Create an alternative in the same quote_group as the original."""

        def run():
            original = self.client.select_one("quotes", filters=[eq("id", original_quote_id)])
            group = self._ensure_group(original)
            row = {name: original.get(name) for name in COPIED_FIELDS}
            row.update({
                "scope_summary": scope_summary or original.get("scope_summary"),
                "status": "draft",
                "quote_type": original.get("quote_type"),
                "quote_group": group,
                "is_alternative": True,
            })
            return self.client.insert_one("quotes", row)

        result = self._mutate(
            run,
            failure="Failed to create alternative quote",
            invalidate=INVALIDATES + [("quote_alternatives",)],
        )
        self.notifier.success(f"Alternative Quote {result.get('quote_number')} created")
        return result

    def create_quote_revision(self, quote_id: str) -> dict:
        """Copy a quote and its line items as a revision in the same group."""

        def run():
            original = self.client.select_one(
                "quotes", columns="*, line_items:quote_line_items(*)", filters=[eq("id", quote_id)]
            )
            group = self._ensure_group(original)
            row = {name: original.get(name) for name in COPIED_FIELDS + REVISION_PRICING_FIELDS}
            row.update({
                "status": "draft",
                "quote_type": "revision",
                "quote_group": group,
                "is_alternative": False,
            })
            revision = self.client.insert_one("quotes", row)

            items = [
                {
                    **{k: v for k, v in item.items() if k not in LINE_ITEM_SKIP_FIELDS},
                    "quote_id": revision["id"],
                }
                for item in original.get("line_items") or []
            ]
            if items:
                self.client.insert("quote_line_items", items)
            return revision

        result = self._mutate(
            run,
            failure="Failed to create quote revision",
            invalidate=INVALIDATES + [("quote_alternatives",)],
        )
        self.notifier.success(f"Revision {result.get('quote_number')} created")
        return result

    # --- Manager approval ---

    def approval_settings(self, qbo_class_id: str | None = None) -> dict | None:
        """Approval thresholds for a business unit, falling back to the global row."""

        def fetch():
            if qbo_class_id:
                try:
                    settings = self.client.select_one(
                        "quote_approval_settings",
                        filters=[eq("qbo_class_id", qbo_class_id)],
                        maybe=True,
                    )
                except BackendError as e:
                    logger.warning(f"BU approval settings lookup failed: {e.message}")
                    settings = None
                if settings:
                    return settings

            try:
                return self.client.select_one(
                    "quote_approval_settings",
                    filters=[is_null("qbo_class_id")],
                    maybe=True,
                )
            except BackendError as e:
                logger.warning(f"No approval settings found: {e.message}")
                return None

        return self._query(make_key("quote_approval_settings", qbo_class_id), fetch)

    def is_quote_approver(self, user_id: str | None = None) -> bool:
        """True for admins and sales managers (by user role or FSM team role)."""
        user_id = user_id or self.client.current_user_id()
        if not user_id:
            return False

        def fetch():
            profile = self.client.select_one(
                "user_profiles", columns="role", filters=[eq("id", user_id)], maybe=True
            )
            if profile and profile.get("role") in ("admin", "sales_manager"):
                return True

            fsm_profile = self.client.select_one(
                "fsm_team_profiles", columns="fsm_roles", filters=[eq("user_id", user_id)], maybe=True
            )
            return "sales_manager" in ((fsm_profile or {}).get("fsm_roles") or [])

        return self._query(make_key("current_user_is_approver", user_id), fetch)

    def request_manager_approval(self, quote_id: str, notes: str | None = None) -> None:
        now = self._now()
        self._mutate(
            lambda: self.client.update(
                "quotes",
                {
                    "approval_requested_at": now,
                    "approval_requested_by": self.client.current_user_id(),
                    "manager_approval_notes": notes,
                    "updated_at": now,
                },
                [eq("id", quote_id)],
            ),
            success="Approval requested",
            failure="Failed to request approval",
            invalidate=INVALIDATES,
        )

    def manager_approve_quote(self, quote_id: str, notes: str | None = None) -> None:
        now = self._now()
        self._mutate(
            lambda: self.client.update(
                "quotes",
                {
                    "manager_approved_at": now,
                    "manager_approved_by": self.client.current_user_id(),
                    "manager_rejected_at": None,
                    "manager_approval_notes": notes,
                    "requires_approval": False,
                    "updated_at": now,
                },
                [eq("id", quote_id)],
            ),
            success="Quote approved - ready to send to client",
            failure="Failed to approve quote",
            invalidate=INVALIDATES,
        )

    def manager_reject_quote(self, quote_id: str, notes: str | None = None) -> None:
        """Reject a quote; clearing the request sends it back to draft."""
        now = self._now()
        self._mutate(
            lambda: self.client.update(
                "quotes",
                {
                    "manager_rejected_at": now,
                    "manager_approved_by": self.client.current_user_id(),
                    "manager_approved_at": None,
                    "approval_requested_at": None,
                    "manager_approval_notes": notes,
                    "updated_at": now,
                },
                [eq("id", quote_id)],
            ),
            success="Quote returned to sales rep",
            failure="Failed to reject quote",
            invalidate=INVALIDATES,
        )
