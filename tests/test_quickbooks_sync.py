"""Tests for QuickBooks vendor, customer, bill and invoice sync."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from commandx.models import Vendor
from commandx.quickbooks.errors import QuickBooksError
from commandx.quickbooks.sync import (
    QuickBooksSync,
    customer_payload,
    invoice_line_payload,
    vendor_from_quickbooks,
    vendor_payload,
)


@pytest.fixture
def qb():
    """Mock QuickBooksClient."""
    client = MagicMock()
    client.query_entities = AsyncMock(return_value=[])
    client.get_entity = AsyncMock(return_value=None)
    client.create_entity = AsyncMock(return_value={"Id": "77"})
    client.request = AsyncMock(return_value={})
    client.token_manager.get_config = AsyncMock(return_value={"id": "cfg", "realm_id": "9130"})
    return client


@pytest.fixture
def sync(store, qb):
    return QuickBooksSync(store, qb)


class TestPayloads:
    def test_vendor_payload(self):
        payload = vendor_payload(
            Vendor(
                id="v1", name="Acme Supply", phone="555-0100", address="1 Main St",
                city="Tulsa", state="OK", specialty="Concrete",
            )
        )

        assert payload["DisplayName"] == "Acme Supply"
        assert payload["CompanyName"] == "Acme Supply"
        assert payload["PrimaryPhone"] == {"FreeFormNumber": "555-0100"}
        assert payload["BillAddr"] == {
            "Line1": "1 Main St", "City": "Tulsa", "CountrySubDivisionCode": "OK",
        }
        assert payload["Active"] is True
        assert "PrimaryEmailAddr" not in payload

    def test_customer_payload_splits_address(self):
        payload = customer_payload(
            {"name": "Harbor Authority", "address": "9 Dock Rd, Mobile, AL, 36602"}
        )
        assert payload["BillAddr"] == {
            "Line1": "9 Dock Rd", "City": "Mobile",
            "CountrySubDivisionCode": "AL", "PostalCode": "36602",
        }

    def test_vendor_from_quickbooks_placeholder_email(self):
        row = vendor_from_quickbooks({"Id": "31", "CompanyName": "Delta Steel"})
        assert row["name"] == "Delta Steel"
        assert row["email"] == "vendor-31@placeholder.com"

    def test_invoice_line_uses_effective_price(self):
        assert invoice_line_payload(Decimal("4"), Decimal("100"), Decimal("500")) == (
            Decimal("125.00"), Decimal("500.00"),
        )
        assert invoice_line_payload(Decimal("0"), Decimal("10"), Decimal("0")) == (
            Decimal("10"), Decimal("0.00"),
        )


class TestVendors:
    @pytest.mark.asyncio
    async def test_existing_mapping_short_circuits(self, sync, store, qb):
        store.tables["quickbooks_vendor_mappings"] = [
            {"vendor_id": "v1", "quickbooks_vendor_id": "12"}
        ]

        assert await sync.get_or_create_vendor("v1") == "12"
        qb.query_entities.assert_not_called()

    @pytest.mark.asyncio
    async def test_creates_and_maps_vendor(self, sync, store, qb):
        store.tables["vendors"] = [{"id": "v1", "name": "Acme Supply"}]

        assert await sync.get_or_create_vendor("v1") == "77"

        [mapping] = store.rows("quickbooks_vendor_mappings")
        assert mapping["quickbooks_vendor_id"] == "77"
        assert mapping["sync_status"] == "synced"
        assert mapping["sync_direction"] == "export"

    @pytest.mark.asyncio
    async def test_adopts_duplicate_id(self, sync, store, qb):
        store.tables["vendors"] = [{"id": "v1", "name": "Acme Supply"}]
        qb.create_entity.side_effect = QuickBooksError(
            "QuickBooks API error: 400 - Duplicate Name Exists Error : Id=42"
        )

        assert await sync.get_or_create_vendor("v1") == "42"

    @pytest.mark.asyncio
    async def test_duplicate_without_id_prefers_exact_match(self, sync, store, qb):
        store.tables["vendors"] = [{"id": "v1", "name": "Acme Supply"}]
        qb.create_entity.side_effect = QuickBooksError("Duplicate Name Exists Error")
        qb.query_entities.side_effect = [
            [],
            [
                {"Id": "8", "DisplayName": "Acme Supply Inc"},
                {"Id": "9", "DisplayName": "ACME SUPPLY"},
            ],
        ]

        assert await sync.get_or_create_vendor("v1") == "9"
        like_query = qb.query_entities.call_args.args[1]
        assert "LIKE '%Acme Supply%' MAXRESULTS 10" in like_query

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, sync, store, qb):
        store.tables["vendors"] = [{"id": "v1", "name": "Acme Supply"}]
        qb.create_entity.side_effect = QuickBooksError("Validation failed")

        with pytest.raises(QuickBooksError):
            await sync.get_or_create_vendor("v1")
        assert store.rows("quickbooks_vendor_mappings") == []

    @pytest.mark.asyncio
    async def test_import_vendors(self, sync, store, qb):
        store.tables.update(
            {
                "vendors": [
                    {"id": "v1", "name": "Mapped Co"},
                    {"id": "v2", "name": "Same Email", "email": "ops@same.test"},
                ],
                "quickbooks_vendor_mappings": [
                    {"vendor_id": "v1", "quickbooks_vendor_id": "100"}
                ],
            }
        )
        qb.query_entities.return_value = [
            {"Id": "100", "DisplayName": "Mapped Co Renamed"},
            {"Id": "101", "DisplayName": "Same Email", "PrimaryEmailAddr": {"Address": "ops@same.test"}},
            {"Id": "102", "DisplayName": "Brand New"},
        ]

        counts = await sync.import_vendors()

        assert counts == {"imported": 1, "updated": 1, "skipped": 1, "errors": 0, "total": 3}
        names = {r["id"]: r["name"] for r in store.rows("vendors")}
        assert names["v1"] == "Mapped Co Renamed"
        assert "Brand New" in names.values()
        directions = {
            m["quickbooks_vendor_id"]: m.get("sync_direction")
            for m in store.rows("quickbooks_vendor_mappings")
        }
        assert directions["101"] == "import"
        assert store.rows("quickbooks_sync_log")[-1]["action"] == "import"

    @pytest.mark.asyncio
    async def test_export_vendors(self, sync, store, qb):
        store.tables.update(
            {
                "vendors": [
                    {"id": "v1", "name": "Mapped Co", "status": "active"},
                    {"id": "v2", "name": "Unmapped Co", "status": "active"},
                    {"id": "v3", "name": "Dormant Co", "status": "inactive"},
                ],
                "quickbooks_vendor_mappings": [
                    {"vendor_id": "v1", "quickbooks_vendor_id": "100"}
                ],
            }
        )
        qb.get_entity.return_value = {"Id": "100", "SyncToken": "3"}
        qb.create_entity.side_effect = [{"Id": "100"}, {"Id": "51"}]

        counts = await sync.export_vendors()

        assert counts == {"created": 1, "updated": 1, "errors": 0, "total": 2}
        update_payload = qb.create_entity.call_args_list[0].args[1]
        assert update_payload["SyncToken"] == "3"
        assert update_payload["sparse"] is True

    @pytest.mark.asyncio
    async def test_export_counts_errors(self, sync, store, qb):
        store.tables["vendors"] = [{"id": "v1", "name": "Broken Co", "status": "active"}]
        qb.create_entity.side_effect = QuickBooksError("Validation failed")

        counts = await sync.export_vendors()

        assert counts["errors"] == 1
        assert store.rows("quickbooks_sync_log")[-1]["status"] == "partial"

    @pytest.mark.asyncio
    async def test_sync_vendor_missing_in_quickbooks(self, sync, store, qb):
        store.tables.update(
            {
                "vendors": [{"id": "v1", "name": "Gone Co"}],
                "quickbooks_vendor_mappings": [
                    {"vendor_id": "v1", "quickbooks_vendor_id": "100"}
                ],
            }
        )

        with pytest.raises(QuickBooksError, match="QuickBooks vendor not found"):
            await sync.sync_vendor("v1")


class TestCustomers:
    @pytest.mark.asyncio
    async def test_creates_and_maps_customer(self, sync, store, qb):
        store.tables["customers"] = [{"id": "c1", "name": "Harbor Authority"}]

        assert await sync.get_or_create_customer("c1") == "77"

        entity, payload = qb.create_entity.call_args.args
        assert entity == "Customer"
        assert payload["DisplayName"] == "Harbor Authority"
        [mapping] = store.rows("quickbooks_customer_mappings")
        assert (mapping["customer_id"], mapping["quickbooks_customer_id"]) == ("c1", "77")

    @pytest.mark.asyncio
    async def test_existing_customer_is_matched_by_name(self, sync, store, qb):
        store.tables["customers"] = [{"id": "c1", "name": "Harbor Authority"}]
        qb.query_entities.return_value = [{"Id": "15", "DisplayName": "Harbor Authority"}]

        assert await sync.get_or_create_customer("c1") == "15"
        qb.create_entity.assert_not_called()

    @pytest.mark.asyncio
    async def test_mapping_short_circuits(self, sync, store, qb):
        store.tables["quickbooks_customer_mappings"] = [
            {"customer_id": "c1", "quickbooks_customer_id": "15"}
        ]

        assert await sync.get_or_create_customer("c1") == "15"
        qb.query_entities.assert_not_called()


class TestPersonnelSync:
    @pytest.mark.asyncio
    async def test_not_connected(self, sync, qb):
        qb.token_manager.get_config.return_value = None

        result = await sync.sync_personnel("p1")

        assert result == {"success": True, "message": "QuickBooks not connected, skipping sync"}

    @pytest.mark.asyncio
    async def test_requires_completed_onboarding(self, sync, store):
        store.tables["personnel"] = [
            {"id": "p1", "first_name": "Ana", "last_name": "Lopez", "onboarding_status": "invited"}
        ]

        result = await sync.sync_personnel("p1")

        assert result == {"success": False, "error": "Personnel has not completed onboarding"}

    @pytest.mark.asyncio
    async def test_creates_linked_vendor(self, sync, store, qb):
        store.tables.update(
            {
                "personnel": [
                    {
                        "id": "p1", "first_name": "Ana", "last_name": "Lopez",
                        "onboarding_status": "completed",
                    }
                ],
                "vendors": [{"id": "v9", "name": "Ana Lopez"}],
            }
        )
        store.rpc_handlers["create_personnel_vendor"] = lambda params: "v9"

        result = await sync.sync_personnel("p1")

        assert result["success"]
        assert result["vendor_id"] == "v9"
        assert result["quickbooks_vendor_id"] == "77"
        assert store.rpc_calls == [("create_personnel_vendor", {"p_personnel_id": "p1"})]
        actions = [log["action"] for log in store.rows("quickbooks_sync_log")]
        assert actions == ["sync", "auto-sync"]


@pytest.fixture
def bill_store(store):
    store.tables.update(
        {
            "vendor_bills": [
                {
                    "id": "b1", "number": "VB-1", "vendor_id": "v1", "vendor_name": "Acme Supply",
                    "status": "open", "subtotal": 250, "total": 262.5,
                    "bill_date": "2024-03-01", "due_date": "2024-03-31",
                }
            ],
            "vendor_bill_line_items": [
                {"bill_id": "b1", "description": "Formwork", "quantity": 10,
                 "unit_cost": 25, "total": 250},
            ],
            "quickbooks_vendor_mappings": [{"vendor_id": "v1", "quickbooks_vendor_id": "12"}],
        }
    )
    return store


class TestBills:
    @pytest.mark.asyncio
    async def test_create_bill(self, sync, bill_store, qb):
        qb.query_entities.side_effect = [[], [{"Id": "60", "Name": "Job Materials"}]]
        qb.create_entity.return_value = {"Id": "700", "DocNumber": "VB-1"}

        result = await sync.create_bill("b1")

        assert result == {
            "success": True, "quickbooks_bill_id": "700", "quickbooks_doc_number": "VB-1",
        }
        entity, payload = qb.create_entity.call_args.args
        assert entity == "Bill"
        assert payload["VendorRef"] == {"value": "12"}
        assert payload["TxnDate"] == "2024-03-01"
        [line] = payload["Line"]
        assert line["Amount"] == 250.0
        assert line["AccountBasedExpenseLineDetail"]["AccountRef"] == {
            "value": "60", "name": "Job Materials",
        }
        [mapping] = bill_store.rows("quickbooks_bill_mappings")
        assert mapping["sync_status"] == "synced"

    @pytest.mark.asyncio
    async def test_already_synced(self, sync, bill_store, qb):
        bill_store.tables["quickbooks_bill_mappings"] = [
            {"bill_id": "b1", "quickbooks_bill_id": "700", "sync_status": "synced"}
        ]

        result = await sync.create_bill("b1")

        assert result["message"] == "Bill already synced"
        qb.create_entity.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_records_error_mapping(self, sync, bill_store, qb):
        qb.query_entities.return_value = [{"Id": "60", "Name": "COGS"}]
        qb.create_entity.side_effect = QuickBooksError(
            "Invalid Reference Id : Vendor has been deleted"
        )

        with pytest.raises(QuickBooksError):
            await sync.create_bill("b1")

        [mapping] = bill_store.rows("quickbooks_bill_mappings")
        assert mapping["sync_status"] == "error"
        assert "deleted" in mapping["error_message"]
        assert bill_store.rows("quickbooks_sync_log")[-1]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_no_expense_account(self, sync, bill_store, qb):
        with pytest.raises(QuickBooksError, match="No expense account"):
            await sync.create_bill("b1")


@pytest.fixture
def invoice_store(store):
    store.tables.update(
        {
            "invoices": [
                {
                    "id": "i1", "number": "INV-1001", "customer_id": "c1", "status": "sent",
                    "subtotal": 500, "tax_rate": 8, "tax_amount": 40, "total": 540,
                    "due_date": "2024-04-30",
                }
            ],
            "invoice_line_items": [
                {"invoice_id": "i1", "description": "Rebar", "quantity": 4,
                 "unit_price": 100, "markup": 20, "total": 500},
            ],
            "quickbooks_customer_mappings": [
                {"customer_id": "c1", "quickbooks_customer_id": "300"}
            ],
        }
    )
    return store


class TestInvoices:
    @pytest.mark.asyncio
    async def test_create_invoice_with_tax_line(self, sync, invoice_store, qb):
        qb.create_entity.return_value = {"Id": "900", "DocNumber": "INV-1001"}

        result = await sync.create_invoice("i1")

        assert result["quickbooks_invoice_id"] == "900"
        payload = qb.create_entity.call_args.args[1]
        assert payload["CustomerRef"] == {"value": "300"}
        rebar, tax = payload["Line"]
        assert rebar["SalesItemLineDetail"] == {"Qty": 4.0, "UnitPrice": 125.0}
        assert tax["Description"] == "Sales Tax"
        assert tax["Amount"] == 40.0
        [mapping] = invoice_store.rows("quickbooks_invoice_mappings")
        assert mapping["quickbooks_doc_number"] == "INV-1001"

    @pytest.mark.asyncio
    async def test_already_synced(self, sync, invoice_store, qb):
        invoice_store.tables["quickbooks_invoice_mappings"] = [
            {"invoice_id": "i1", "quickbooks_invoice_id": "900"}
        ]

        result = await sync.create_invoice("i1")

        assert result["message"] == "Invoice already synced"
        qb.create_entity.assert_not_called()

    @pytest.mark.asyncio
    async def test_void_unsynced_invoice(self, sync):
        result = await sync.void_invoice("i1")
        assert result == {
            "success": True, "message": "Invoice not synced to QuickBooks", "voided": False,
        }

    @pytest.mark.asyncio
    async def test_void_blocked_by_payments(self, sync, store, qb):
        store.tables["quickbooks_invoice_mappings"] = [
            {"invoice_id": "i1", "quickbooks_invoice_id": "900", "sync_status": "synced"}
        ]
        qb.request.return_value = {
            "Invoice": {"Id": "900", "TotalAmt": 540, "Balance": 140, "SyncToken": "2"}
        }

        result = await sync.void_invoice("i1")

        assert not result["success"]
        assert "$400.00 in payments" in result["error"]
        assert store.rows("quickbooks_invoice_mappings")[0]["sync_status"] == "void_failed"
        qb.request.assert_awaited_once_with("GET", "/invoice/900")

    @pytest.mark.asyncio
    async def test_void_invoice(self, sync, store, qb):
        store.tables["quickbooks_invoice_mappings"] = [
            {"invoice_id": "i1", "quickbooks_invoice_id": "900", "sync_status": "synced"}
        ]
        qb.request.side_effect = [
            {"Invoice": {"Id": "900", "TotalAmt": 540, "Balance": 540, "SyncToken": "2"}},
            {"Invoice": {"Id": "900"}},
        ]

        result = await sync.void_invoice("i1")

        assert result == {"success": True, "message": "Invoice voided in QuickBooks", "voided": True}
        qb.request.assert_awaited_with(
            "POST", "/invoice", json={"Id": "900", "SyncToken": "2"}, params={"operation": "void"}
        )
        assert store.rows("quickbooks_invoice_mappings")[0]["sync_status"] == "voided"

    @pytest.mark.asyncio
    async def test_void_already_voided(self, sync, store, qb):
        store.tables["quickbooks_invoice_mappings"] = [
            {"invoice_id": "i1", "quickbooks_invoice_id": "900", "sync_status": "voided"}
        ]

        result = await sync.void_invoice("i1")

        assert result["message"] == "Invoice already voided in QuickBooks"
        qb.request.assert_not_called()
