"""Vendor bills raised against purchase orders, and their payments."""

from collections.abc import Mapping
from datetime import date, timedelta
from decimal import Decimal

import structlog

from commandx.billing import BALANCE_TOLERANCE, HUNDRED, BillingError
from commandx.models import (
    ZERO,
    PurchaseOrder,
    VendorBill,
    VendorBillLineItem,
    VendorBillStatus,
    money,
    to_decimal,
)
from commandx.store import RecordNotFoundError, SupabaseClient, eq

logger = structlog.get_logger(__name__)

DEFAULT_TERMS_DAYS = 30


def recalculate_bill_status(total: Decimal, paid: Decimal) -> VendorBillStatus:
    """Status implied by how much of ``total`` has been paid."""
    if paid <= 0:
        return VendorBillStatus.OPEN
    if total - paid <= 0:
        return VendorBillStatus.PAID
    return VendorBillStatus.PARTIALLY_PAID


def build_bill_lines_from_purchase_order(
    po: PurchaseOrder, quantities: Mapping[str, Decimal] | None = None
) -> list[VendorBillLineItem]:
    """Bill lines for ``quantities`` of each PO line (default: all remaining)."""
    quantities = dict(quantities or {})
    unknown = sorted(set(quantities) - {item.id for item in po.line_items})
    if unknown:
        raise BillingError(f"Unknown purchase order line items: {', '.join(unknown)}")

    lines: list[VendorBillLineItem] = []
    for item in po.line_items:
        remaining = item.remaining_quantity
        qty = to_decimal(quantities.get(item.id), max(ZERO, remaining))
        if qty < 0:
            raise BillingError(f"Quantity for '{item.description}' cannot be negative")
        if qty > remaining:
            raise BillingError(
                f"Quantity {qty} for '{item.description}' exceeds remaining {remaining}"
            )
        if qty == 0:
            continue
        lines.append(
            VendorBillLineItem(
                description=item.description,
                quantity=qty,
                unit_cost=item.unit_price,
                total=money(qty * item.unit_price),
                project_id=item.project_id or po.project_id,
                po_line_item_id=item.id,
            )
        )
    if not lines:
        raise BillingError("No line items to bill")
    return lines


class VendorBillService:
    """Create and settle vendor bills, keeping PO billed amounts current."""

    def __init__(self, store: SupabaseClient) -> None:
        self._store = store
        self._logger = logger.bind(component="vendor_bill_service")

    async def get_purchase_order(self, po_id: str) -> PurchaseOrder:
        row = await self._store.select_one("purchase_orders", filters=[eq("id", po_id)])
        if row is None:
            raise RecordNotFoundError(f"Purchase order not found: {po_id}")
        lines = await self._store.select(
            "po_line_items", filters=[eq("purchase_order_id", po_id)]
        )
        return PurchaseOrder.from_row(row, lines)

    async def get_bill(self, bill_id: str) -> VendorBill:
        row = await self._store.select_one("vendor_bills", filters=[eq("id", bill_id)])
        if row is None:
            raise RecordNotFoundError(f"Vendor bill not found: {bill_id}")
        lines = await self._store.select(
            "vendor_bill_line_items", filters=[eq("bill_id", bill_id)]
        )
        return VendorBill.from_row(row, lines)

    async def _adjust_po(self, po_id: str, amount: Decimal) -> None:
        row = await self._store.select_one(
            "purchase_orders", "billed_amount", [eq("id", po_id)]
        )
        if row is None:
            return
        billed = max(ZERO, to_decimal(row.get("billed_amount")) + amount)
        await self._store.update(
            "purchase_orders", {"billed_amount": billed}, [eq("id", po_id)]
        )

    async def _adjust_billed_quantity(self, line_id: str, delta: Decimal) -> None:
        row = await self._store.select_one(
            "po_line_items", "billed_quantity", [eq("id", line_id)]
        )
        if row is None:
            return
        billed = max(ZERO, to_decimal(row.get("billed_quantity")) + delta)
        await self._store.update(
            "po_line_items", {"billed_quantity": billed}, [eq("id", line_id)]
        )

    async def create_from_purchase_order(
        self,
        po_id: str,
        quantities: Mapping[str, Decimal] | None = None,
        bill_date: date | None = None,
        due_date: date | None = None,
    ) -> VendorBill:
        po = await self.get_purchase_order(po_id)
        lines = build_bill_lines_from_purchase_order(po, quantities)

        subtotal = sum((line.total for line in lines), ZERO)
        tax_amount = money(subtotal * po.tax_rate / HUNDRED)
        total = subtotal + tax_amount
        bill_date = bill_date or date.today()

        row = await self._store.insert(
            "vendor_bills",
            {
                "vendor_id": po.vendor_id,
                "vendor_name": po.vendor_name,
                "bill_date": bill_date,
                "due_date": due_date or bill_date + timedelta(days=DEFAULT_TERMS_DAYS),
                "status": VendorBillStatus.OPEN,
                "subtotal": subtotal,
                "tax_rate": po.tax_rate,
                "tax_amount": tax_amount,
                "total": total,
                "paid_amount": ZERO,
                "remaining_amount": total,
                "notes": f"Created from Purchase Order {po.number}",
                "purchase_order_id": po.id,
                "purchase_order_number": po.number,
            },
        )
        line_rows = await self._store.insert_many(
            "vendor_bill_line_items", [line.to_row(row["id"]) for line in lines]
        )
        for line in lines:
            if line.po_line_item_id:
                await self._adjust_billed_quantity(line.po_line_item_id, line.quantity)
        await self._adjust_po(po.id, total)

        self._logger.info(
            "vendor_bill_created",
            number=row.get("number"),
            purchase_order=po.number,
            total=str(total),
        )
        return VendorBill.from_row(row, line_rows)

    async def record_payment(
        self,
        bill_id: str,
        amount: Decimal,
        payment_date: date | None = None,
        payment_method: str = "check",
        reference_number: str | None = None,
    ) -> VendorBill:
        if amount <= 0:
            raise BillingError("Payment amount must be positive")
        bill = await self.get_bill(bill_id)
        if bill.status == VendorBillStatus.VOID:
            raise BillingError(f"Vendor bill {bill.number} is void")
        if amount > bill.remaining_amount + BALANCE_TOLERANCE:
            raise BillingError(
                f"Payment (${amount:.2f}) exceeds bill balance "
                f"(${bill.remaining_amount:.2f})"
            )

        await self._store.insert(
            "vendor_bill_payments",
            {
                "bill_id": bill_id,
                "payment_date": payment_date or date.today(),
                "amount": amount,
                "payment_method": payment_method,
                "reference_number": reference_number,
            },
        )
        paid = bill.paid_amount + amount
        status = recalculate_bill_status(bill.total, paid)
        await self._store.update(
            "vendor_bills",
            {
                "paid_amount": paid,
                "remaining_amount": max(ZERO, bill.total - paid),
                "status": status,
            },
            [eq("id", bill_id)],
        )
        self._logger.info(
            "vendor_bill_payment_recorded",
            number=bill.number,
            amount=str(amount),
            status=status.value,
        )
        bill.paid_amount = paid
        bill.status = status
        return bill

    async def void(self, bill_id: str) -> VendorBill:
        """Void a bill and release what it billed against its purchase order."""
        bill = await self.get_bill(bill_id)
        if bill.status == VendorBillStatus.VOID:
            return bill
        if bill.paid_amount > 0:
            raise BillingError(f"Vendor bill {bill.number} has payments and cannot be voided")

        await self._store.update(
            "vendor_bills",
            {"status": VendorBillStatus.VOID, "remaining_amount": ZERO},
            [eq("id", bill_id)],
        )
        if bill.purchase_order_id:
            for line in bill.line_items:
                if line.po_line_item_id:
                    await self._adjust_billed_quantity(line.po_line_item_id, -line.quantity)
            await self._adjust_po(bill.purchase_order_id, -bill.total)

        self._logger.info("vendor_bill_voided", number=bill.number)
        bill.status = VendorBillStatus.VOID
        return bill
