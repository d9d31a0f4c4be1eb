"""
Invoice data access: listings, status changes, sending, payments and
invoice line items.
"""

import logging
from dataclasses import dataclass

from backend_client import eq, gt, gte, in_, lt, lte
from errors import ValidationError
from query_cache import make_key
from repository import Repository
from utils import get_quote_defaults, round_money

logger = logging.getLogger(__name__)

INVOICE_STATUSES = ("draft", "sent", "past_due", "paid", "bad_debt")

PAYMENT_METHODS = ("card", "check", "cash", "ach", "qbo_payment")

SENT_METHODS = ("email", "client_hub", "print")

LIST_COLUMNS = "*, client:clients(id, name, code), job:jobs(id, job_number)"

DETAIL_COLUMNS = """
    *,
    client:clients(id, name, code, address_line1, city, state, zip),
    job:jobs(id, job_number, product_type, linear_feet),
    quote:quotes(id, quote_number),
    line_items:invoice_line_items(*),
    payments:payments(*)
"""


@dataclass
class InvoiceFilters:
    status: str | list[str] | None = None
    client_id: str | None = None
    date_from: str | None = None
    date_to: str | None = None
    is_past_due: bool = False


@dataclass
class CreateInvoiceData:
    client_id: str
    total: float
    subtotal: float
    billing_address: dict | None = None
    job_id: str | None = None
    quote_id: str | None = None
    project_id: str | None = None
    tax_rate: float | None = None
    tax_amount: float | None = None
    discount_amount: float | None = None
    invoice_date: str | None = None
    due_date: str | None = None
    payment_terms: str | None = None
    po_number: str | None = None


@dataclass
class PaymentData:
    invoice_id: str
    amount: float
    payment_method: str
    reference_number: str | None = None
    payment_date: str | None = None
    notes: str | None = None


def apply_payment(invoice: dict, amount: float) -> dict:
    """
    New amount_paid / balance_due / status after a payment.

    An invoice with nothing left owing is paid; anything else goes back to sent.
    """
    amount_paid = round_money((invoice.get("amount_paid") or 0) + amount)
    balance_due = round_money((invoice.get("total") or 0) - amount_paid)
    return {
        "amount_paid": amount_paid,
        "balance_due": balance_due,
        "status": "paid" if balance_due <= 0 else "sent",
    }


class InvoiceService(Repository):
    """Reads and writes for invoices, payments and invoice line items."""

    def list_invoices(self, filters: InvoiceFilters | None = None) -> list[dict]:
        filters = filters or InvoiceFilters()

        def fetch():
            conditions = []
            if filters.status:
                if isinstance(filters.status, (list, tuple)):
                    conditions.append(in_("status", filters.status))
                else:
                    conditions.append(eq("status", filters.status))
            if filters.client_id:
                conditions.append(eq("client_id", filters.client_id))
            if filters.date_from:
                conditions.append(gte("invoice_date", filters.date_from))
            if filters.date_to:
                conditions.append(lte("invoice_date", filters.date_to))
            if filters.is_past_due:
                conditions.append(lt("due_date", self._today()))
                conditions.append(gt("balance_due", 0))
            return self.client.select(
                "invoices", columns=LIST_COLUMNS, filters=conditions, order="created_at", ascending=False
            )

        return self._query(make_key("invoices", filters), fetch)

    def get_invoice(self, invoice_id: str | None) -> dict | None:
        if not invoice_id:
            return None
        return self._query(
            make_key("invoices", invoice_id),
            lambda: self.client.select_one("invoices", columns=DETAIL_COLUMNS, filters=[eq("id", invoice_id)]),
        )

    def invoices_by_client(self, client_id: str | None) -> list[dict]:
        if not client_id:
            return []
        return self._query(
            make_key("invoices", "client", client_id),
            lambda: self.client.select(
                "invoices",
                columns="*, job:jobs(id, job_number)",
                filters=[eq("client_id", client_id)],
                order="created_at",
                ascending=False,
            ),
        )

    def create_invoice(self, data: CreateInvoiceData) -> dict:
        row = {
            "job_id": data.job_id,
            "quote_id": data.quote_id,
            "project_id": data.project_id,
            "client_id": data.client_id,
            "billing_address": data.billing_address,
            "subtotal": data.subtotal,
            "tax_rate": data.tax_rate or 0,
            "tax_amount": data.tax_amount or 0,
            "discount_amount": data.discount_amount or 0,
            "total": data.total,
            "amount_paid": 0,
            "balance_due": data.total,
            "invoice_date": data.invoice_date or self._today(),
            "due_date": data.due_date,
            "payment_terms": data.payment_terms or get_quote_defaults().get("payment_terms", "Net 30"),
            "po_number": data.po_number,
            "status": "draft",
        }
        invoice = self._mutate(
            lambda: self.client.insert_one("invoices", row),
            failure="Failed to create invoice",
            invalidate=[("invoices",)],
        )
        self.notifier.success(f"Invoice {invoice.get('invoice_number')} created")
        return invoice

    def update_invoice(self, invoice_id: str, data: dict) -> None:
        values = {**data, "updated_at": self._now()}
        self._mutate(
            lambda: self.client.update("invoices", values, [eq("id", invoice_id)]),
            success="Invoice updated",
            failure="Failed to update invoice",
            invalidate=[("invoices",)],
        )

    def update_invoice_status(self, invoice_id: str, status: str, notes: str | None = None) -> None:
        if status not in INVOICE_STATUSES:
            raise ValidationError(f"Unknown invoice status: {status}")

        def run():
            current = self.client.select_one(
                "invoices", columns="status", filters=[eq("id", invoice_id)], maybe=True
            )
            now = self._now()
            self.client.update(
                "invoices",
                {"status": status, "status_changed_at": now, "updated_at": now},
                [eq("id", invoice_id)],
            )
            self._record_status_history("invoice", invoice_id, (current or {}).get("status"), status, notes)

        self._mutate(
            run,
            success="Status updated",
            failure="Failed to update status",
            invalidate=[("invoices",)],
        )

    def send_invoice(self, invoice_id: str, method: str, email: str | None = None) -> None:
        if method not in SENT_METHODS:
            raise ValidationError(f"Unknown send method: {method}")
        now = self._now()
        self._mutate(
            lambda: self.client.update(
                "invoices",
                {
                    "status": "sent",
                    "status_changed_at": now,
                    "sent_at": now,
                    "sent_method": method,
                    "sent_to_email": email,
                    "updated_at": now,
                },
                [eq("id", invoice_id)],
            ),
            success="Invoice sent",
            failure="Failed to send invoice",
            invalidate=[("invoices",)],
        )

    def record_payment(self, payment: PaymentData) -> dict:
        """Insert a payment, then recompute the invoice balance and status."""
        if payment.amount <= 0:
            raise ValidationError("Payment amount must be greater than zero")
        if payment.payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Unknown payment method: {payment.payment_method}")

        def run():
            self.client.insert("payments", {
                "invoice_id": payment.invoice_id,
                "amount": payment.amount,
                "payment_method": payment.payment_method,
                "reference_number": payment.reference_number,
                "payment_date": payment.payment_date or self._today(),
                "notes": payment.notes,
            })
            invoice = self.client.select_one(
                "invoices", columns="amount_paid, total", filters=[eq("id", payment.invoice_id)]
            )
            values = apply_payment(invoice, payment.amount)
            now = self._now()
            values["updated_at"] = now
            if values["status"] == "paid":
                values["status_changed_at"] = now
            self.client.update("invoices", values, [eq("id", payment.invoice_id)])
            return values

        return self._mutate(
            run,
            success="Payment recorded",
            failure="Failed to record payment",
            invalidate=[("invoices",), ("payments",)],
        )

    def sync_to_quickbooks(self, invoice_id: str) -> None:
        """Mark an invoice synced; the accounting push itself runs server-side."""
        now = self._now()
        self._mutate(
            lambda: self.client.update(
                "invoices",
                {"qbo_sync_status": "synced", "qbo_synced_at": now, "updated_at": now},
                [eq("id", invoice_id)],
            ),
            success="Synced to QuickBooks",
            failure="Failed to sync to QuickBooks",
            invalidate=[("invoices",)],
        )

    def delete_invoice(self, invoice_id: str) -> None:
        self._mutate(
            lambda: self.client.delete("invoices", [eq("id", invoice_id)]),
            success="Invoice deleted",
            failure="Failed to delete invoice",
            invalidate=[("invoices",)],
        )

    # --- Line items ---

    def add_line_item(self, invoice_id: str, item: dict) -> dict:
        return self._mutate(
            lambda: self.client.insert_one("invoice_line_items", {**item, "invoice_id": invoice_id}),
            failure="Failed to add line item",
            invalidate=[("invoices", invoice_id)],
        )

    def update_line_item(self, item_id: str, data: dict) -> None:
        self._mutate(
            lambda: self.client.update("invoice_line_items", data, [eq("id", item_id)]),
            failure="Failed to update line item",
            invalidate=[("invoices",)],
        )

    def delete_line_item(self, item_id: str) -> None:
        self._mutate(
            lambda: self.client.delete("invoice_line_items", [eq("id", item_id)]),
            failure="Failed to delete line item",
            invalidate=[("invoices",)],
        )
