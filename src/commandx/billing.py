"""Job order invoicing: partial billing against remaining quantities."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

import structlog

from commandx.models import (
    ZERO,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    JobOrder,
    TMTicket,
    TMTicketStatus,
    money,
    to_decimal,
)
from commandx.store import RecordNotFoundError, SupabaseClient, eq

logger = structlog.get_logger(__name__)

BALANCE_TOLERANCE = Decimal("0.01")
HUNDRED = Decimal("100")


class BillingError(Exception):
    """An invoice or bill request that would corrupt balances."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.details = details


def calculate_line_total(
    quantity: Decimal, unit_price: Decimal, markup: Decimal = ZERO
) -> Decimal:
    """Price a line with margin-based markup.

    A markup of ``m`` percent means the line carries an ``m`` percent gross
    margin: ``base / (1 - m/100)``. Markups outside (0, 100) leave the base.
    """
    base = quantity * unit_price
    if ZERO < markup < HUNDRED:
        return base / (1 - markup / HUNDRED)
    return base


@dataclass
class InvoiceDraft:
    """Invoice computed from a job order, not yet persisted."""

    job_order_id: str
    customer_id: str
    customer_name: str
    project_id: str | None
    project_name: str | None
    lines: list[InvoiceLineItem]
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    is_full_remaining: bool = False
    quantities: dict[str, Decimal] = field(default_factory=dict)


def build_invoice_from_job_order(
    job_order: JobOrder, quantities: Mapping[str, Decimal] | None = None
) -> InvoiceDraft:
    """Compute an invoice for ``quantities`` of each job order line.

    Lines not named in ``quantities`` invoice their full remaining quantity.
    When nothing has been invoiced yet and every line invoices all of its
    remaining quantity, the job order's stored subtotal, tax and total are
    reused so the invoice matches the job order to the cent.
    """
    quantities = dict(quantities or {})
    known = {item.id for item in job_order.line_items}
    unknown = sorted(set(quantities) - known)
    if unknown:
        raise BillingError(f"Unknown job order line items: {', '.join(unknown)}")

    lines: list[InvoiceLineItem] = []
    invoiced: dict[str, Decimal] = {}
    exceeded: list[str] = []
    all_full = True
    taxable_subtotal = ZERO

    for item in job_order.line_items:
        remaining = item.remaining_quantity
        qty = to_decimal(quantities.get(item.id), max(ZERO, remaining))
        if qty < 0:
            raise BillingError(f"Quantity for '{item.description}' cannot be negative")
        if qty > remaining:
            exceeded.append(item.description)
        if not (qty == remaining and remaining > 0):
            all_full = False
        if qty <= 0:
            continue

        total = money(calculate_line_total(qty, item.unit_price, item.markup))
        lines.append(
            InvoiceLineItem(
                description=item.description,
                quantity=qty,
                unit_price=item.unit_price,
                markup=item.markup,
                total=total,
                jo_line_item_id=item.id,
                product_id=item.product_id,
                product_name=item.product_name,
                is_taxable=item.is_taxable,
            )
        )
        invoiced[item.id] = qty
        if item.is_taxable:
            taxable_subtotal += total

    if exceeded:
        raise BillingError(
            "Some quantities exceed the remaining uninvoiced amount",
            details={"lines": exceeded},
        )
    if not lines:
        raise BillingError("No line items to invoice")

    is_full = job_order.invoiced_amount == 0 and all_full
    if is_full:
        subtotal = job_order.subtotal
        tax_amount = job_order.tax_amount
        total = job_order.total
    else:
        subtotal = sum((line.total for line in lines), ZERO)
        tax_amount = money(taxable_subtotal * job_order.tax_rate / HUNDRED)
        total = money(subtotal + tax_amount)
        if total > job_order.remaining_amount + BALANCE_TOLERANCE:
            raise BillingError(
                f"Invoice total (${total:.2f}) exceeds remaining job order "
                f"balance (${job_order.remaining_amount:.2f})"
            )

    return InvoiceDraft(
        job_order_id=job_order.id,
        customer_id=job_order.customer_id,
        customer_name=job_order.customer_name,
        project_id=job_order.project_id,
        project_name=job_order.project_name,
        lines=lines,
        subtotal=subtotal,
        tax_rate=job_order.tax_rate,
        tax_amount=tax_amount,
        total=total,
        is_full_remaining=is_full,
        quantities=invoiced,
    )


def tm_ticket_to_invoice_lines(ticket: TMTicket) -> list[InvoiceLineItem]:
    """Invoice lines for a customer-signed time-and-materials ticket."""
    if ticket.status not in (TMTicketStatus.SIGNED, TMTicketStatus.APPROVED):
        raise BillingError(
            f"T&M ticket {ticket.ticket_number} must be signed before invoicing "
            f"(status: {ticket.status.value})"
        )
    return [
        InvoiceLineItem(
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            markup=item.markup,
            total=money(calculate_line_total(item.quantity, item.unit_price, item.markup)),
            product_id=item.product_id,
            is_taxable=item.is_taxable,
        )
        for item in ticket.line_items
    ]


class InvoiceService:
    """Persist invoices and keep job order balances in step with them."""

    def __init__(self, store: SupabaseClient) -> None:
        self._store = store
        self._logger = logger.bind(component="invoice_service")

    async def get_job_order(self, job_order_id: str) -> JobOrder:
        row = await self._store.select_one("job_orders", filters=[eq("id", job_order_id)])
        if row is None:
            raise RecordNotFoundError(f"Job order not found: {job_order_id}")
        lines = await self._store.select(
            "job_order_line_items", filters=[eq("job_order_id", job_order_id)]
        )
        return JobOrder.from_row(row, lines)

    async def get_invoice(self, invoice_id: str) -> Invoice:
        row = await self._store.select_one("invoices", filters=[eq("id", invoice_id)])
        if row is None:
            raise RecordNotFoundError(f"Invoice not found: {invoice_id}")
        lines = await self._store.select(
            "invoice_line_items", filters=[eq("invoice_id", invoice_id)]
        )
        return Invoice.from_row(row, lines)

    async def _shift_job_order_balance(self, job_order_id: str, delta: Decimal) -> None:
        """Move ``delta`` from the job order's remaining to its invoiced amount."""
        row = await self._store.select_one(
            "job_orders",
            "invoiced_amount, remaining_amount",
            [eq("id", job_order_id)],
        )
        if row is None:
            self._logger.warning("job_order_missing", job_order_id=job_order_id)
            return
        await self._store.update(
            "job_orders",
            {
                "invoiced_amount": to_decimal(row.get("invoiced_amount")) + delta,
                "remaining_amount": to_decimal(row.get("remaining_amount")) - delta,
            },
            [eq("id", job_order_id)],
        )

    async def _advance_invoiced_quantity(self, line_id: str, delta: Decimal) -> None:
        row = await self._store.select_one(
            "job_order_line_items", "invoiced_quantity", [eq("id", line_id)]
        )
        if row is None:
            return
        current = to_decimal(row.get("invoiced_quantity"))
        await self._store.update(
            "job_order_line_items",
            {"invoiced_quantity": max(ZERO, current + delta)},
            [eq("id", line_id)],
        )

    async def create_from_job_order(
        self,
        job_order_id: str,
        quantities: Mapping[str, Decimal] | None = None,
        due_date: date | None = None,
        notes: str | None = None,
    ) -> Invoice:
        """Create a draft invoice from a job order and advance its balances."""
        job_order = await self.get_job_order(job_order_id)
        draft = build_invoice_from_job_order(job_order, quantities)

        number = await self._store.rpc("get_next_invoice_number")
        if not number:
            raise BillingError("Could not allocate an invoice number")

        row = await self._store.insert(
            "invoices",
            {
                "number": number,
                "job_order_id": job_order.id,
                "customer_id": draft.customer_id,
                "customer_name": draft.customer_name,
                "project_id": draft.project_id,
                "project_name": draft.project_name,
                "status": InvoiceStatus.DRAFT,
                "subtotal": draft.subtotal,
                "tax_rate": draft.tax_rate,
                "tax_amount": draft.tax_amount,
                "total": draft.total,
                "amount_paid": ZERO,
                "remaining_amount": draft.total,
                "due_date": due_date,
                "notes": notes,
            },
        )
        line_rows = await self._store.insert_many(
            "invoice_line_items", [line.to_row(row["id"]) for line in draft.lines]
        )

        await self._shift_job_order_balance(job_order.id, draft.total)
        for line_id, qty in draft.quantities.items():
            await self._advance_invoiced_quantity(line_id, qty)

        self._logger.info(
            "invoice_created",
            number=number,
            job_order=job_order.number,
            total=str(draft.total),
            full_remaining=draft.is_full_remaining,
        )
        return Invoice.from_row(row, line_rows)

    async def update_totals(
        self,
        invoice_id: str,
        subtotal: Decimal,
        tax_amount: Decimal,
        total: Decimal,
    ) -> Invoice:
        """Change an invoice's totals, shifting the job order by the difference."""
        invoice = await self.get_invoice(invoice_id)
        difference = total - invoice.total
        await self._store.update(
            "invoices",
            {
                "subtotal": subtotal,
                "tax_amount": tax_amount,
                "total": total,
                "remaining_amount": total - invoice.amount_paid,
            },
            [eq("id", invoice_id)],
        )
        if invoice.job_order_id and difference != 0:
            await self._shift_job_order_balance(invoice.job_order_id, difference)
            self._logger.info(
                "job_order_balance_adjusted",
                job_order_id=invoice.job_order_id,
                difference=str(difference),
            )
        return await self.get_invoice(invoice_id)

    async def delete(self, invoice_id: str) -> None:
        """Delete an invoice and give its amount back to the job order."""
        invoice = await self.get_invoice(invoice_id)
        if invoice.job_order_id:
            await self._shift_job_order_balance(invoice.job_order_id, -invoice.total)
            for line in invoice.line_items:
                if line.jo_line_item_id:
                    await self._advance_invoiced_quantity(line.jo_line_item_id, -line.quantity)
        await self._store.delete("invoice_line_items", [eq("invoice_id", invoice_id)])
        await self._store.delete("invoices", [eq("id", invoice_id)])
        self._logger.info("invoice_deleted", invoice_id=invoice_id, number=invoice.number)

    async def record_payment(
        self,
        invoice_id: str,
        amount: Decimal,
        payment_date: date | None = None,
        payment_method: str = "check",
        reference_number: str | None = None,
    ) -> Invoice:
        """Apply a customer payment and move the invoice to paid/partially paid."""
        if amount <= 0:
            raise BillingError("Payment amount must be positive")
        invoice = await self.get_invoice(invoice_id)
        if invoice.status == InvoiceStatus.VOID:
            raise BillingError(f"Invoice {invoice.number} is void")
        if amount > invoice.remaining_amount + BALANCE_TOLERANCE:
            raise BillingError(
                f"Payment (${amount:.2f}) exceeds invoice balance "
                f"(${invoice.remaining_amount:.2f})"
            )

        payment_date = payment_date or date.today()
        await self._store.insert(
            "invoice_payments",
            {
                "invoice_id": invoice_id,
                "amount": amount,
                "payment_date": payment_date,
                "payment_method": payment_method,
                "reference_number": reference_number,
            },
        )
        paid = invoice.amount_paid + amount
        remaining = max(ZERO, invoice.total - paid)
        status = InvoiceStatus.PAID if remaining <= 0 else InvoiceStatus.PARTIALLY_PAID
        values: dict[str, Any] = {
            "amount_paid": paid,
            "remaining_amount": remaining,
            "status": status,
        }
        if status == InvoiceStatus.PAID:
            values["paid_date"] = payment_date
        await self._store.update("invoices", values, [eq("id", invoice_id)])
        self._logger.info(
            "invoice_payment_recorded",
            number=invoice.number,
            amount=str(amount),
            status=status.value,
        )
        invoice.amount_paid = paid
        invoice.status = status
        return invoice

    async def mark_paid(self, invoice_id: str, paid_date: date | None = None) -> None:
        invoice = await self.get_invoice(invoice_id)
        await self._store.update(
            "invoices",
            {
                "status": InvoiceStatus.PAID,
                "paid_date": paid_date or date.today(),
                "amount_paid": invoice.total,
                "remaining_amount": ZERO,
            },
            [eq("id", invoice_id)],
        )
        self._logger.info("invoice_marked_paid", number=invoice.number)

