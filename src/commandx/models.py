"""Domain records loaded from the hosted store.

Rows arrive as JSON with numbers as floats or strings and dates as ISO
strings; ``from_row`` normalizes money and hours to ``Decimal`` and dates to
``date``.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

CENTS = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """Convert a JSON number/string to Decimal; None and blanks become default."""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid numeric value: {value!r}") from exc


def to_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def money(value: Decimal) -> Decimal:
    """Round to cents."""
    return value.quantize(CENTS)


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    VOID = "void"


class VendorBillStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    VOID = "void"


class ReimbursementStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"
    VOIDED = "voided"
    VOID_FAILED = "void_failed"


class TMTicketStatus(str, Enum):
    DRAFT = "draft"
    PENDING_SIGNATURE = "pending_signature"
    SIGNED = "signed"
    APPROVED = "approved"
    INVOICED = "invoiced"
    VOID = "void"


# === Personnel & Time ===


@dataclass
class Personnel:
    id: str
    first_name: str
    last_name: str
    hourly_rate: Decimal | None = None
    pay_rate: Decimal | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    ssn_last_four: str | None = None
    onboarding_status: str | None = None
    linked_vendor_id: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def payroll_rate(self) -> Decimal:
        """Internal pay rate, falling back to the billing hourly rate."""
        return self.pay_rate or self.hourly_rate or ZERO

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Personnel":
        return cls(
            id=str(row["id"]),
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            hourly_rate=to_decimal(row["hourly_rate"]) if row.get("hourly_rate") is not None else None,
            pay_rate=to_decimal(row["pay_rate"]) if row.get("pay_rate") is not None else None,
            email=row.get("email"),
            phone=row.get("phone"),
            address=row.get("address"),
            city=row.get("city"),
            state=row.get("state"),
            zip=row.get("zip"),
            ssn_last_four=row.get("ssn_last_four"),
            onboarding_status=row.get("onboarding_status"),
            linked_vendor_id=row.get("linked_vendor_id"),
        )


@dataclass
class Project:
    id: str
    name: str
    location: str | None = None
    contract_number: str | None = None
    customer_id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Project":
        location = row.get("location") or ", ".join(
            p for p in (row.get("address"), row.get("city"), row.get("state")) if p
        )
        return cls(
            id=str(row["id"]),
            name=row.get("name") or "",
            location=location or None,
            contract_number=row.get("contract_number") or row.get("customer_po"),
            customer_id=row.get("customer_id"),
        )


@dataclass
class TimeEntry:
    id: str
    personnel_id: str | None
    project_id: str | None
    entry_date: date
    regular_hours: Decimal = ZERO
    overtime_hours: Decimal = ZERO
    hourly_rate: Decimal | None = None
    is_holiday: bool = False

    @property
    def total_hours(self) -> Decimal:
        return self.regular_hours + self.overtime_hours

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TimeEntry":
        regular = row.get("regular_hours")
        overtime = row.get("overtime_hours")
        if regular is None and overtime is None and row.get("hours") is not None:
            regular = row["hours"]
        entry_date = to_date(row.get("entry_date"))
        if entry_date is None:
            raise ValueError(f"time entry {row.get('id')} has no entry_date")
        return cls(
            id=str(row["id"]),
            personnel_id=row.get("personnel_id"),
            project_id=row.get("project_id"),
            entry_date=entry_date,
            regular_hours=to_decimal(regular),
            overtime_hours=to_decimal(overtime),
            hourly_rate=to_decimal(row["hourly_rate"]) if row.get("hourly_rate") is not None else None,
            is_holiday=bool(row.get("is_holiday")),
        )


@dataclass
class Reimbursement:
    id: str
    personnel_id: str
    amount: Decimal
    description: str = ""
    project_id: str | None = None
    status: ReimbursementStatus = ReimbursementStatus.PENDING
    payment_id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Reimbursement":
        return cls(
            id=str(row["id"]),
            personnel_id=str(row["personnel_id"]),
            amount=to_decimal(row.get("amount")),
            description=row.get("description") or "",
            project_id=row.get("project_id"),
            status=ReimbursementStatus(row.get("status") or "pending"),
            payment_id=row.get("payment_id"),
        )


@dataclass
class CompanySettings:
    overtime_multiplier: Decimal = Decimal("1.5")
    weekly_overtime_threshold: Decimal = Decimal("40")
    holiday_multiplier: Decimal = Decimal("2.0")

    @classmethod
    def from_row(
        cls, row: dict[str, Any] | None, defaults: "CompanySettings | None" = None
    ) -> "CompanySettings":
        base = defaults or cls()
        if not row:
            return base
        # Zero or missing values fall back to the defaults
        return cls(
            overtime_multiplier=to_decimal(row.get("overtime_multiplier")) or base.overtime_multiplier,
            weekly_overtime_threshold=to_decimal(row.get("weekly_overtime_threshold"))
            or base.weekly_overtime_threshold,
            holiday_multiplier=to_decimal(row.get("holiday_multiplier")) or base.holiday_multiplier,
        )


@dataclass
class PaymentAllocation:
    project_id: str
    amount: Decimal
    notes: str
    payment_id: str | None = None


@dataclass
class PersonnelPayment:
    id: str
    personnel_id: str
    personnel_name: str
    payment_date: date
    gross_amount: Decimal
    pay_period_start: date | None = None
    pay_period_end: date | None = None
    regular_hours: Decimal = ZERO
    overtime_hours: Decimal = ZERO
    hourly_rate: Decimal = ZERO
    number: str | None = None
    notes: str | None = None
    allocations: list[PaymentAllocation] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "PersonnelPayment":
        return cls(
            id=str(row["id"]),
            personnel_id=str(row["personnel_id"]),
            personnel_name=row.get("personnel_name") or "",
            payment_date=to_date(row.get("payment_date")) or date.today(),
            gross_amount=to_decimal(row.get("gross_amount")),
            pay_period_start=to_date(row.get("pay_period_start")),
            pay_period_end=to_date(row.get("pay_period_end")),
            regular_hours=to_decimal(row.get("regular_hours")),
            overtime_hours=to_decimal(row.get("overtime_hours")),
            hourly_rate=to_decimal(row.get("hourly_rate")),
            number=row.get("number"),
            notes=row.get("notes"),
        )


# === Receivables ===


@dataclass
class JobOrderLineItem:
    id: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    markup: Decimal = ZERO
    invoiced_quantity: Decimal = ZERO
    is_taxable: bool = True
    product_id: str | None = None
    product_name: str | None = None

    @property
    def remaining_quantity(self) -> Decimal:
        return self.quantity - self.invoiced_quantity

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "JobOrderLineItem":
        return cls(
            id=str(row["id"]),
            description=row.get("description") or "",
            quantity=to_decimal(row.get("quantity")),
            unit_price=to_decimal(row.get("unit_price")),
            markup=to_decimal(row.get("markup")),
            invoiced_quantity=to_decimal(row.get("invoiced_quantity")),
            is_taxable=row.get("is_taxable", True) is not False,
            product_id=row.get("product_id"),
            product_name=row.get("product_name"),
        )


@dataclass
class JobOrder:
    id: str
    number: str
    customer_id: str
    customer_name: str
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    invoiced_amount: Decimal = ZERO
    remaining_amount: Decimal = ZERO
    project_id: str | None = None
    project_name: str | None = None
    line_items: list[JobOrderLineItem] = field(default_factory=list)

    @classmethod
    def from_row(
        cls, row: dict[str, Any], line_rows: list[dict[str, Any]] | None = None
    ) -> "JobOrder":
        total = to_decimal(row.get("total"))
        invoiced = to_decimal(row.get("invoiced_amount"))
        remaining = row.get("remaining_amount")
        return cls(
            id=str(row["id"]),
            number=str(row.get("number") or ""),
            customer_id=str(row.get("customer_id") or ""),
            customer_name=row.get("customer_name") or "",
            subtotal=to_decimal(row.get("subtotal")),
            tax_rate=to_decimal(row.get("tax_rate")),
            tax_amount=to_decimal(row.get("tax_amount")),
            total=total,
            invoiced_amount=invoiced,
            remaining_amount=to_decimal(remaining) if remaining is not None else total - invoiced,
            project_id=row.get("project_id"),
            project_name=row.get("project_name"),
            line_items=[JobOrderLineItem.from_row(r) for r in line_rows or []],
        )


@dataclass
class InvoiceLineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    total: Decimal
    markup: Decimal = ZERO
    jo_line_item_id: str | None = None
    product_id: str | None = None
    product_name: str | None = None
    is_taxable: bool = True
    id: str | None = None

    def to_row(self, invoice_id: str) -> dict[str, Any]:
        return {
            "invoice_id": invoice_id,
            "jo_line_item_id": self.jo_line_item_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "markup": self.markup,
            "total": self.total,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "InvoiceLineItem":
        return cls(
            id=row.get("id"),
            description=row.get("description") or "",
            quantity=to_decimal(row.get("quantity")),
            unit_price=to_decimal(row.get("unit_price")),
            total=to_decimal(row.get("total")),
            markup=to_decimal(row.get("markup")),
            jo_line_item_id=row.get("jo_line_item_id"),
            product_id=row.get("product_id"),
            product_name=row.get("product_name"),
            is_taxable=row.get("is_taxable", True) is not False,
        )


@dataclass
class Invoice:
    id: str
    number: str
    customer_id: str
    status: InvoiceStatus
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    amount_paid: Decimal = ZERO
    due_date: date | None = None
    job_order_id: str | None = None
    customer_name: str | None = None
    line_items: list[InvoiceLineItem] = field(default_factory=list)

    @property
    def remaining_amount(self) -> Decimal:
        return self.total - self.amount_paid

    @classmethod
    def from_row(
        cls, row: dict[str, Any], line_rows: list[dict[str, Any]] | None = None
    ) -> "Invoice":
        return cls(
            id=str(row["id"]),
            number=str(row.get("number") or ""),
            customer_id=str(row.get("customer_id") or ""),
            status=InvoiceStatus(row.get("status") or "draft"),
            subtotal=to_decimal(row.get("subtotal")),
            tax_rate=to_decimal(row.get("tax_rate")),
            tax_amount=to_decimal(row.get("tax_amount")),
            total=to_decimal(row.get("total")),
            amount_paid=to_decimal(row.get("amount_paid")),
            due_date=to_date(row.get("due_date")),
            job_order_id=row.get("job_order_id"),
            customer_name=row.get("customer_name"),
            line_items=[InvoiceLineItem.from_row(r) for r in line_rows or []],
        )


@dataclass
class TMTicketLineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    markup: Decimal = ZERO
    is_taxable: bool = True
    product_id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TMTicketLineItem":
        return cls(
            description=row.get("description") or "",
            quantity=to_decimal(row.get("quantity")),
            unit_price=to_decimal(row.get("unit_price")),
            markup=to_decimal(row.get("markup")),
            is_taxable=row.get("is_taxable", True) is not False,
            product_id=row.get("product_id"),
        )


@dataclass
class TMTicket:
    id: str
    ticket_number: str
    status: TMTicketStatus
    customer_id: str | None = None
    project_id: str | None = None
    line_items: list[TMTicketLineItem] = field(default_factory=list)

    @classmethod
    def from_row(
        cls, row: dict[str, Any], line_rows: list[dict[str, Any]] | None = None
    ) -> "TMTicket":
        return cls(
            id=str(row["id"]),
            ticket_number=str(row.get("ticket_number") or ""),
            status=TMTicketStatus(row.get("status") or "draft"),
            customer_id=row.get("customer_id"),
            project_id=row.get("project_id"),
            line_items=[TMTicketLineItem.from_row(r) for r in line_rows or []],
        )


# === Payables ===


@dataclass
class Vendor:
    id: str
    name: str
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    specialty: str | None = None
    license_number: str | None = None
    status: str = "active"

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Vendor":
        return cls(
            id=str(row["id"]),
            name=(row.get("name") or "").strip(),
            email=row.get("email"),
            phone=row.get("phone"),
            company=row.get("company"),
            address=row.get("address"),
            city=row.get("city"),
            state=row.get("state"),
            zip=row.get("zip"),
            specialty=row.get("specialty"),
            license_number=row.get("license_number"),
            status=row.get("status") or "active",
        )


@dataclass
class POLineItem:
    id: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    billed_quantity: Decimal = ZERO
    project_id: str | None = None

    @property
    def remaining_quantity(self) -> Decimal:
        return self.quantity - self.billed_quantity

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "POLineItem":
        return cls(
            id=str(row["id"]),
            description=row.get("description") or "",
            quantity=to_decimal(row.get("quantity")),
            unit_price=to_decimal(row.get("unit_price")),
            billed_quantity=to_decimal(row.get("billed_quantity")),
            project_id=row.get("project_id"),
        )


@dataclass
class PurchaseOrder:
    id: str
    number: str
    vendor_id: str
    vendor_name: str
    total: Decimal
    tax_rate: Decimal = ZERO
    billed_amount: Decimal = ZERO
    project_id: str | None = None
    line_items: list[POLineItem] = field(default_factory=list)

    @classmethod
    def from_row(
        cls, row: dict[str, Any], line_rows: list[dict[str, Any]] | None = None
    ) -> "PurchaseOrder":
        return cls(
            id=str(row["id"]),
            number=str(row.get("number") or ""),
            vendor_id=str(row.get("vendor_id") or ""),
            vendor_name=row.get("vendor_name") or "",
            total=to_decimal(row.get("total")),
            tax_rate=to_decimal(row.get("tax_rate")),
            billed_amount=to_decimal(row.get("billed_amount")),
            project_id=row.get("project_id"),
            line_items=[POLineItem.from_row(r) for r in line_rows or []],
        )


@dataclass
class VendorBillLineItem:
    description: str
    quantity: Decimal
    unit_cost: Decimal
    total: Decimal
    project_id: str | None = None
    category_id: str | None = None
    po_line_item_id: str | None = None

    def to_row(self, bill_id: str) -> dict[str, Any]:
        return {
            "bill_id": bill_id,
            "description": self.description,
            "quantity": self.quantity,
            "unit_cost": self.unit_cost,
            "total": self.total,
            "project_id": self.project_id,
            "category_id": self.category_id,
            "po_line_item_id": self.po_line_item_id,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "VendorBillLineItem":
        return cls(
            description=row.get("description") or "",
            quantity=to_decimal(row.get("quantity")),
            unit_cost=to_decimal(row.get("unit_cost")),
            total=to_decimal(row.get("total")),
            project_id=row.get("project_id"),
            category_id=row.get("category_id"),
            po_line_item_id=row.get("po_line_item_id"),
        )


@dataclass
class VendorBill:
    id: str
    number: str
    vendor_id: str
    vendor_name: str
    status: VendorBillStatus
    subtotal: Decimal
    total: Decimal
    tax_rate: Decimal = ZERO
    tax_amount: Decimal = ZERO
    paid_amount: Decimal = ZERO
    bill_date: date | None = None
    due_date: date | None = None
    purchase_order_id: str | None = None
    notes: str | None = None
    line_items: list[VendorBillLineItem] = field(default_factory=list)

    @property
    def remaining_amount(self) -> Decimal:
        return self.total - self.paid_amount

    @classmethod
    def from_row(
        cls, row: dict[str, Any], line_rows: list[dict[str, Any]] | None = None
    ) -> "VendorBill":
        return cls(
            id=str(row["id"]),
            number=str(row.get("number") or ""),
            vendor_id=str(row.get("vendor_id") or ""),
            vendor_name=row.get("vendor_name") or "",
            status=VendorBillStatus(row.get("status") or "draft"),
            subtotal=to_decimal(row.get("subtotal")),
            total=to_decimal(row.get("total")),
            tax_rate=to_decimal(row.get("tax_rate")),
            tax_amount=to_decimal(row.get("tax_amount")),
            paid_amount=to_decimal(row.get("paid_amount")),
            bill_date=to_date(row.get("bill_date")),
            due_date=to_date(row.get("due_date")),
            purchase_order_id=row.get("purchase_order_id"),
            notes=row.get("notes"),
            line_items=[VendorBillLineItem.from_row(r) for r in line_rows or []],
        )
