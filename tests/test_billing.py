"""Tests for job order invoicing."""

from datetime import date
from decimal import Decimal

import pytest

from commandx.billing import (
    BillingError,
    InvoiceService,
    build_invoice_from_job_order,
    calculate_line_total,
    tm_ticket_to_invoice_lines,
)
from commandx.models import (
    InvoiceLineItem,
    InvoiceStatus,
    JobOrder,
    JobOrderLineItem,
    TMTicket,
    TMTicketLineItem,
    TMTicketStatus,
)
from commandx.store import RecordNotFoundError


def test_invoice_line_from_row_keeps_taxable_flag():
    row = {"id": "il-1", "description": "Engineering", "quantity": 5, "unit_price": 60}

    assert InvoiceLineItem.from_row(row).is_taxable
    assert not InvoiceLineItem.from_row({**row, "is_taxable": False}).is_taxable


def _job_order(**overrides) -> JobOrder:
    values = dict(
        id="jo-1",
        number="JO-001",
        customer_id="cust-1",
        customer_name="Harbor Authority",
        subtotal=Decimal("1312.50"),
        tax_rate=Decimal("8.25"),
        tax_amount=Decimal("82.50"),
        total=Decimal("1395.00"),
        remaining_amount=Decimal("1395.00"),
        line_items=[
            JobOrderLineItem(
                id="L1", description="Rebar install", quantity=Decimal("10"),
                unit_price=Decimal("100"),
            ),
            JobOrderLineItem(
                id="L2", description="Engineering", quantity=Decimal("5"),
                unit_price=Decimal("50"), markup=Decimal("20"), is_taxable=False,
            ),
        ],
    )
    values.update(overrides)
    return JobOrder(**values)


class TestCalculateLineTotal:
    def test_margin_markup(self):
        assert calculate_line_total(Decimal("5"), Decimal("50"), Decimal("20")) == Decimal("312.5")

    def test_no_markup(self):
        assert calculate_line_total(Decimal("3"), Decimal("12.5")) == Decimal("37.5")

    def test_out_of_range_markup_is_ignored(self):
        assert calculate_line_total(Decimal("1"), Decimal("10"), Decimal("100")) == Decimal("10")


class TestBuildInvoiceFromJobOrder:
    def test_full_remaining_reuses_job_order_totals(self):
        draft = build_invoice_from_job_order(_job_order())

        assert draft.is_full_remaining
        assert draft.subtotal == Decimal("1312.50")
        assert draft.tax_amount == Decimal("82.50")
        assert draft.total == Decimal("1395.00")
        assert draft.quantities == {"L1": Decimal("10"), "L2": Decimal("5")}

    def test_partial_invoice_taxes_taxable_lines_only(self):
        draft = build_invoice_from_job_order(
            _job_order(), {"L1": Decimal("4"), "L2": Decimal("2")}
        )

        assert not draft.is_full_remaining
        # L2: 100 / 0.8
        assert [line.total for line in draft.lines] == [Decimal("400.00"), Decimal("125.00")]
        assert draft.subtotal == Decimal("525.00")
        assert draft.tax_amount == Decimal("33.00")
        assert draft.total == Decimal("558.00")

    def test_zero_quantity_lines_are_omitted(self):
        draft = build_invoice_from_job_order(_job_order(), {"L1": Decimal("4"), "L2": Decimal("0")})
        assert [line.jo_line_item_id for line in draft.lines] == ["L1"]
        assert draft.quantities == {"L1": Decimal("4")}

    def test_quantity_exceeding_remaining(self):
        with pytest.raises(BillingError) as exc_info:
            build_invoice_from_job_order(_job_order(), {"L1": Decimal("11")})

        assert str(exc_info.value) == "Some quantities exceed the remaining uninvoiced amount"
        assert exc_info.value.details == {"lines": ["Rebar install"]}

    def test_previously_invoiced_quantity_reduces_remaining(self):
        job_order = _job_order(invoiced_amount=Decimal("600"), remaining_amount=Decimal("795"))
        job_order.line_items[0].invoiced_quantity = Decimal("6")

        with pytest.raises(BillingError):
            build_invoice_from_job_order(job_order, {"L1": Decimal("5")})

        draft = build_invoice_from_job_order(job_order, {"L2": Decimal("0")})
        assert draft.lines[0].quantity == Decimal("4")
        assert not draft.is_full_remaining

    def test_negative_quantity(self):
        with pytest.raises(BillingError, match="cannot be negative"):
            build_invoice_from_job_order(_job_order(), {"L1": Decimal("-1")})

    def test_unknown_line(self):
        with pytest.raises(BillingError, match="Unknown job order line items: L9"):
            build_invoice_from_job_order(_job_order(), {"L9": Decimal("1")})

    def test_nothing_to_invoice(self):
        with pytest.raises(BillingError, match="No line items to invoice"):
            build_invoice_from_job_order(_job_order(), {"L1": Decimal("0"), "L2": Decimal("0")})

    def test_total_above_remaining_balance(self):
        job_order = _job_order(remaining_amount=Decimal("100.00"))

        with pytest.raises(BillingError) as exc_info:
            build_invoice_from_job_order(job_order, {"L1": Decimal("4"), "L2": Decimal("0")})

        assert str(exc_info.value) == (
            "Invoice total ($433.00) exceeds remaining job order balance ($100.00)"
        )


class TestTMTicketLines:
    def _ticket(self, status):
        return TMTicket(
            id="tm-1",
            ticket_number="TM-7",
            status=status,
            line_items=[
                TMTicketLineItem(
                    description="Crane hours", quantity=Decimal("3"),
                    unit_price=Decimal("150"), markup=Decimal("25"),
                )
            ],
        )

    def test_signed_ticket(self):
        [line] = tm_ticket_to_invoice_lines(self._ticket(TMTicketStatus.SIGNED))
        assert line.total == Decimal("600.00")

    def test_approved_ticket(self):
        assert tm_ticket_to_invoice_lines(self._ticket(TMTicketStatus.APPROVED))

    def test_unsigned_ticket_rejected(self):
        with pytest.raises(BillingError, match="must be signed"):
            tm_ticket_to_invoice_lines(self._ticket(TMTicketStatus.PENDING_SIGNATURE))


@pytest.fixture
def billing_store(store):
    store.tables.update(
        {
            "job_orders": [
                {
                    "id": "jo-1",
                    "number": "JO-001",
                    "customer_id": "cust-1",
                    "customer_name": "Harbor Authority",
                    "subtotal": 1312.5,
                    "tax_rate": 8.25,
                    "tax_amount": 82.5,
                    "total": 1395.0,
                    "invoiced_amount": 0,
                    "remaining_amount": 1395.0,
                }
            ],
            "job_order_line_items": [
                {
                    "id": "L1", "job_order_id": "jo-1", "description": "Rebar install",
                    "quantity": 10, "unit_price": 100, "invoiced_quantity": 0,
                },
                {
                    "id": "L2", "job_order_id": "jo-1", "description": "Engineering",
                    "quantity": 5, "unit_price": 50, "markup": 20, "is_taxable": False,
                    "invoiced_quantity": 0,
                },
            ],
        }
    )
    store.rpc_handlers["get_next_invoice_number"] = lambda _: "INV-1001"
    return store


class TestInvoiceService:
    @pytest.mark.asyncio
    async def test_create_advances_job_order(self, billing_store):
        service = InvoiceService(billing_store)

        invoice = await service.create_from_job_order(
            "jo-1", {"L1": Decimal("4"), "L2": Decimal("0")}, due_date=date(2024, 4, 30)
        )

        assert invoice.number == "INV-1001"
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.total == Decimal("433.0")
        assert len(invoice.line_items) == 1

        [job_order] = billing_store.rows("job_orders")
        assert job_order["invoiced_amount"] == 433.0
        assert job_order["remaining_amount"] == 962.0
        line = next(r for r in billing_store.rows("job_order_line_items") if r["id"] == "L1")
        assert line["invoiced_quantity"] == 4.0

    @pytest.mark.asyncio
    async def test_delete_restores_job_order(self, billing_store):
        service = InvoiceService(billing_store)
        invoice = await service.create_from_job_order("jo-1", {"L1": Decimal("4"), "L2": Decimal("0")})

        await service.delete(invoice.id)

        [job_order] = billing_store.rows("job_orders")
        assert job_order["invoiced_amount"] == 0
        assert job_order["remaining_amount"] == 1395.0
        assert billing_store.rows("invoices") == []
        assert billing_store.rows("invoice_line_items") == []
        line = next(r for r in billing_store.rows("job_order_line_items") if r["id"] == "L1")
        assert line["invoiced_quantity"] == 0

    @pytest.mark.asyncio
    async def test_update_totals_shifts_difference(self, billing_store):
        service = InvoiceService(billing_store)
        invoice = await service.create_from_job_order("jo-1")

        updated = await service.update_totals(
            invoice.id, Decimal("1307.50"), Decimal("82.50"), Decimal("1390.00")
        )

        assert updated.total == Decimal("1390.0")
        [job_order] = billing_store.rows("job_orders")
        assert job_order["invoiced_amount"] == 1390.0
        assert job_order["remaining_amount"] == 5.0

    @pytest.mark.asyncio
    async def test_payments_move_status(self, billing_store):
        service = InvoiceService(billing_store)
        invoice = await service.create_from_job_order("jo-1", {"L1": Decimal("4"), "L2": Decimal("0")})

        partial = await service.record_payment(invoice.id, Decimal("400"), date(2024, 4, 1))
        assert partial.status == InvoiceStatus.PARTIALLY_PAID

        paid = await service.record_payment(invoice.id, Decimal("33"), date(2024, 4, 2))
        assert paid.status == InvoiceStatus.PAID

        [row] = billing_store.rows("invoices")
        assert row["paid_date"] == "2024-04-02"
        assert row["remaining_amount"] == 0
        assert len(billing_store.rows("invoice_payments")) == 2

    @pytest.mark.asyncio
    async def test_mark_paid(self, billing_store):
        service = InvoiceService(billing_store)
        invoice = await service.create_from_job_order("jo-1", {"L1": Decimal("4"), "L2": Decimal("0")})

        await service.mark_paid(invoice.id, date(2024, 5, 1))

        [row] = billing_store.rows("invoices")
        assert row["status"] == "paid"
        assert row["paid_date"] == "2024-05-01"
        assert row["amount_paid"] == 433.0
        assert row["remaining_amount"] == 0

    @pytest.mark.asyncio
    async def test_overpayment_rejected(self, billing_store):
        service = InvoiceService(billing_store)
        invoice = await service.create_from_job_order("jo-1", {"L1": Decimal("4"), "L2": Decimal("0")})

        with pytest.raises(BillingError, match="exceeds invoice balance"):
            await service.record_payment(invoice.id, Decimal("500"))

    @pytest.mark.asyncio
    async def test_non_positive_payment_rejected(self, billing_store):
        with pytest.raises(BillingError, match="must be positive"):
            await InvoiceService(billing_store).record_payment("any", Decimal("0"))

    @pytest.mark.asyncio
    async def test_missing_invoice_number(self, billing_store):
        billing_store.rpc_handlers.clear()

        with pytest.raises(BillingError, match="invoice number"):
            await InvoiceService(billing_store).create_from_job_order("jo-1")

        assert billing_store.rows("invoices") == []

    @pytest.mark.asyncio
    async def test_missing_job_order(self, billing_store):
        with pytest.raises(RecordNotFoundError):
            await InvoiceService(billing_store).create_from_job_order("jo-404")
