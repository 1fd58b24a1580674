"""Synchronization between CommandX records and QuickBooks Online entities.

Local records are linked to QuickBooks ids through mapping tables
(``quickbooks_vendor_mappings``, ``quickbooks_customer_mappings``,
``quickbooks_bill_mappings``, ``quickbooks_invoice_mappings``). Every sync
action is recorded in ``quickbooks_sync_log``.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import structlog

from commandx.models import (
    Invoice,
    Personnel,
    SyncStatus,
    Vendor,
    VendorBill,
    money,
)
from commandx.quickbooks.client import QuickBooksClient, escape_query_value
from commandx.quickbooks.errors import (
    QuickBooksError,
    extract_duplicate_id,
    is_duplicate_name_error,
)
from commandx.store import RecordNotFoundError, StoreError, SupabaseClient, eq

logger = structlog.get_logger(__name__)

ONBOARDING_COMPLETED = "completed"
ACCOUNT_TYPE_PREFERENCE = ("Cost of Goods Sold", "Expense")


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _compact(payload: dict[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is None."""
    return {k: v for k, v in payload.items() if v is not None}


def vendor_payload(vendor: Vendor) -> dict[str, Any]:
    """QuickBooks Vendor body for a local vendor."""
    bill_addr = None
    if vendor.address:
        bill_addr = _compact(
            {
                "Line1": vendor.address,
                "City": vendor.city,
                "CountrySubDivisionCode": vendor.state,
                "PostalCode": vendor.zip,
            }
        )
    return _compact(
        {
            "DisplayName": vendor.name,
            "CompanyName": vendor.company or vendor.name,
            "PrintOnCheckName": vendor.name,
            "PrimaryEmailAddr": {"Address": vendor.email} if vendor.email else None,
            "PrimaryPhone": {"FreeFormNumber": vendor.phone} if vendor.phone else None,
            "BillAddr": bill_addr,
            "Notes": vendor.specialty,
            "AcctNum": vendor.license_number,
            "Active": vendor.status == "active",
        }
    )


def customer_payload(customer: dict[str, Any]) -> dict[str, Any]:
    """QuickBooks Customer body; the address is stored as "line1, city, state, zip"."""
    payload = _compact(
        {
            "DisplayName": str(customer.get("name") or "")[:500],
            "CompanyName": customer.get("company") or None,
            "PrimaryEmailAddr": {"Address": customer["email"]} if customer.get("email") else None,
            "PrimaryPhone": (
                {"FreeFormNumber": customer["phone"]} if customer.get("phone") else None
            ),
        }
    )
    if customer.get("address"):
        parts = str(customer["address"]).split(", ") + ["", "", "", ""]
        payload["BillAddr"] = {
            "Line1": parts[0],
            "City": parts[1],
            "CountrySubDivisionCode": parts[2],
            "PostalCode": parts[3],
        }
    return payload


def vendor_from_quickbooks(qb_vendor: dict[str, Any]) -> dict[str, Any]:
    """Local vendor row for an imported QuickBooks vendor."""
    qb_id = qb_vendor.get("Id")
    return {
        "name": qb_vendor.get("DisplayName") or qb_vendor.get("CompanyName") or "Unknown Vendor",
        "email": (qb_vendor.get("PrimaryEmailAddr") or {}).get("Address")
        or f"vendor-{qb_id}@placeholder.com",
        "phone": (qb_vendor.get("PrimaryPhone") or {}).get("FreeFormNumber"),
        "company": qb_vendor.get("CompanyName"),
        "specialty": qb_vendor.get("Notes"),
        "license_number": qb_vendor.get("AcctNum"),
        "status": "active",
    }


def invoice_line_payload(quantity: Decimal, unit_price: Decimal, total: Decimal) -> tuple[Decimal, Decimal]:
    """``(unit_price, amount)`` satisfying QuickBooks' Amount = Qty x UnitPrice.

    Line totals may include markup, so the unit price sent is the effective
    one derived from the total.
    """
    price = money(total / quantity) if quantity != 0 else unit_price
    return price, money(price * quantity)


class QuickBooksSync:
    """Push and pull vendors, customers, bills and invoices."""

    def __init__(self, store: SupabaseClient, client: QuickBooksClient) -> None:
        self._store = store
        self._qb = client
        self._logger = logger.bind(component="quickbooks_sync")

    async def _log(
        self,
        entity_type: str,
        action: str,
        status: str,
        entity_id: str | None = None,
        quickbooks_id: str | None = None,
        details: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None:
        try:
            await self._store.insert(
                "quickbooks_sync_log",
                {
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "quickbooks_id": quickbooks_id,
                    "action": action,
                    "status": status,
                    "details": details,
                    "error_message": error_message,
                },
            )
        except StoreError as e:
            self._logger.warning("sync_log_write_failed", action=action, error=str(e))

    # === Vendors & Customers ===

    async def _find_by_display_name(self, entity: str, name: str) -> dict[str, Any] | None:
        rows = await self._qb.query_entities(
            entity,
            f"SELECT * FROM {entity} WHERE DisplayName = '{escape_query_value(name)}'",
        )
        return rows[0] if rows else None

    async def _find_similar(self, entity: str, name: str) -> dict[str, Any] | None:
        rows = await self._qb.query_entities(
            entity,
            f"SELECT * FROM {entity} WHERE DisplayName LIKE "
            f"'%{escape_query_value(name)}%' MAXRESULTS 10",
        )
        if not rows:
            return None
        lowered = name.lower()
        exact = [r for r in rows if str(r.get("DisplayName", "")).lower() == lowered]
        return exact[0] if exact else rows[0]

    async def _create_or_adopt(self, entity: str, name: str, payload: dict[str, Any]) -> str:
        """Create an entity, adopting the existing one on a duplicate-name error."""
        try:
            created = await self._qb.create_entity(entity, payload)
            return str(created["Id"])
        except QuickBooksError as e:
            message = str(e)
            if not is_duplicate_name_error(message):
                raise
            existing_id = extract_duplicate_id(message)
            if existing_id:
                self._logger.info("duplicate_adopted", entity=entity, quickbooks_id=existing_id)
                return existing_id
            match = await self._find_similar(entity, name)
            if match is None:
                raise
            self._logger.info("duplicate_matched", entity=entity, quickbooks_id=match["Id"])
            return str(match["Id"])

    async def _map_vendor(self, vendor_id: str, qb_id: str, direction: str = "export") -> None:
        await self._store.insert(
            "quickbooks_vendor_mappings",
            {
                "vendor_id": vendor_id,
                "quickbooks_vendor_id": qb_id,
                "sync_status": SyncStatus.SYNCED,
                "sync_direction": direction,
                "last_synced_at": _now(),
            },
        )

    async def _load_vendor(self, vendor_id: str) -> Vendor:
        row = await self._store.select_one("vendors", filters=[eq("id", vendor_id)])
        if row is None:
            raise RecordNotFoundError(f"Vendor not found: {vendor_id}")
        return Vendor.from_row(row)

    async def get_or_create_vendor(self, vendor_id: str) -> str:
        """QuickBooks vendor id for a local vendor, creating and mapping it if needed."""
        mapping = await self._store.select_one(
            "quickbooks_vendor_mappings",
            "quickbooks_vendor_id",
            [eq("vendor_id", vendor_id)],
        )
        if mapping and mapping.get("quickbooks_vendor_id"):
            return str(mapping["quickbooks_vendor_id"])

        vendor = await self._load_vendor(vendor_id)
        existing = await self._find_by_display_name("Vendor", vendor.name)
        if existing:
            qb_id = str(existing["Id"])
        else:
            qb_id = await self._create_or_adopt("Vendor", vendor.name, vendor_payload(vendor))
        await self._map_vendor(vendor_id, qb_id)
        self._logger.info("vendor_mapped", vendor=vendor.name, quickbooks_id=qb_id)
        return qb_id

    async def get_or_create_customer(self, customer_id: str) -> str:
        mapping = await self._store.select_one(
            "quickbooks_customer_mappings",
            "quickbooks_customer_id",
            [eq("customer_id", customer_id)],
        )
        if mapping and mapping.get("quickbooks_customer_id"):
            return str(mapping["quickbooks_customer_id"])

        customer = await self._store.select_one("customers", filters=[eq("id", customer_id)])
        if customer is None:
            raise RecordNotFoundError(f"Customer not found: {customer_id}")
        name = str(customer.get("name") or "")
        existing = await self._find_by_display_name("Customer", name)
        if existing:
            qb_id = str(existing["Id"])
        else:
            qb_id = await self._create_or_adopt("Customer", name, customer_payload(customer))
        await self._store.insert(
            "quickbooks_customer_mappings",
            {
                "customer_id": customer_id,
                "quickbooks_customer_id": qb_id,
                "sync_status": SyncStatus.SYNCED,
                "last_synced_at": _now(),
            },
        )
        self._logger.info("customer_mapped", customer=name, quickbooks_id=qb_id)
        return qb_id

    async def import_vendors(self) -> dict[str, int]:
        """Pull active QuickBooks vendors into the local vendor list."""
        qb_vendors = await self._qb.query_entities(
            "Vendor", "SELECT * FROM Vendor WHERE Active = true MAXRESULTS 1000"
        )
        counts = {"imported": 0, "updated": 0, "skipped": 0, "errors": 0}
        for qb_vendor in qb_vendors:
            qb_id = str(qb_vendor["Id"])
            data = vendor_from_quickbooks(qb_vendor)
            try:
                mapping = await self._store.select_one(
                    "quickbooks_vendor_mappings",
                    "vendor_id",
                    [eq("quickbooks_vendor_id", qb_id)],
                )
                if mapping:
                    await self._store.update("vendors", data, [eq("id", mapping["vendor_id"])])
                    await self._store.update(
                        "quickbooks_vendor_mappings",
                        {"sync_status": SyncStatus.SYNCED, "last_synced_at": _now()},
                        [eq("quickbooks_vendor_id", qb_id)],
                    )
                    counts["updated"] += 1
                    continue

                same_email = await self._store.select_one(
                    "vendors", "id", [eq("email", data["email"])]
                )
                if same_email:
                    await self._map_vendor(same_email["id"], qb_id, direction="import")
                    counts["skipped"] += 1
                    continue

                created = await self._store.insert("vendors", data)
                await self._map_vendor(created["id"], qb_id, direction="import")
                counts["imported"] += 1
            except StoreError as e:
                self._logger.error("vendor_import_failed", quickbooks_id=qb_id, error=str(e))
                counts["errors"] += 1

        await self._log(
            "vendor",
            "import",
            "partial" if counts["errors"] else "success",
            details={**counts, "total": len(qb_vendors)},
        )
        self._logger.info("vendors_imported", total=len(qb_vendors), **counts)
        return {**counts, "total": len(qb_vendors)}

    async def _update_vendor(self, vendor: Vendor, qb_id: str) -> str | None:
        """Sparse-update a mapped vendor; None when it no longer exists in QuickBooks."""
        current = await self._qb.get_entity("Vendor", qb_id)
        if current is None:
            return None
        updated = await self._qb.create_entity(
            "Vendor",
            {
                **vendor_payload(vendor),
                "Id": qb_id,
                "SyncToken": current.get("SyncToken"),
                "sparse": True,
            },
        )
        return str(updated.get("Id") or qb_id)

    async def export_vendors(self) -> dict[str, int]:
        """Push every active local vendor to QuickBooks."""
        rows = await self._store.select("vendors", filters=[eq("status", "active")])
        counts = {"created": 0, "updated": 0, "errors": 0}
        for row in rows:
            vendor = Vendor.from_row(row)
            try:
                mapping = await self._store.select_one(
                    "quickbooks_vendor_mappings",
                    "quickbooks_vendor_id",
                    [eq("vendor_id", vendor.id)],
                )
                if mapping:
                    if await self._update_vendor(vendor, str(mapping["quickbooks_vendor_id"])):
                        await self._store.update(
                            "quickbooks_vendor_mappings",
                            {"sync_status": SyncStatus.SYNCED, "last_synced_at": _now()},
                            [eq("vendor_id", vendor.id)],
                        )
                        counts["updated"] += 1
                else:
                    qb_id = await self._create_or_adopt(
                        "Vendor", vendor.name, vendor_payload(vendor)
                    )
                    await self._map_vendor(vendor.id, qb_id)
                    counts["created"] += 1
            except (QuickBooksError, StoreError) as e:
                self._logger.error("vendor_export_failed", vendor_id=vendor.id, error=str(e))
                counts["errors"] += 1

        await self._log(
            "vendor",
            "export",
            "partial" if counts["errors"] else "success",
            details={**counts, "total": len(rows)},
        )
        self._logger.info("vendors_exported", total=len(rows), **counts)
        return {**counts, "total": len(rows)}

    async def sync_vendor(self, vendor_id: str) -> str:
        """Create or update one vendor in QuickBooks and return its id there."""
        vendor = await self._load_vendor(vendor_id)
        mapping = await self._store.select_one(
            "quickbooks_vendor_mappings",
            "quickbooks_vendor_id",
            [eq("vendor_id", vendor_id)],
        )
        if mapping:
            qb_id = await self._update_vendor(vendor, str(mapping["quickbooks_vendor_id"]))
            if qb_id is None:
                raise QuickBooksError("QuickBooks vendor not found")
            await self._store.update(
                "quickbooks_vendor_mappings",
                {"sync_status": SyncStatus.SYNCED, "last_synced_at": _now()},
                [eq("vendor_id", vendor_id)],
            )
        else:
            qb_id = await self.get_or_create_vendor(vendor_id)

        await self._log("vendor", "sync", "success", entity_id=vendor_id, quickbooks_id=qb_id)
        return qb_id

    async def sync_personnel(self, personnel_id: str) -> dict[str, Any]:
        """Sync an onboarded employee to QuickBooks as a vendor."""
        if await self._qb.token_manager.get_config() is None:
            return {"success": True, "message": "QuickBooks not connected, skipping sync"}

        row = await self._store.select_one(
            "personnel",
            "id, first_name, last_name, email, phone, address, city, state, zip, "
            "linked_vendor_id, onboarding_status",
            [eq("id", personnel_id)],
        )
        if row is None:
            raise RecordNotFoundError(f"Personnel not found: {personnel_id}")
        personnel = Personnel.from_row(row)
        if personnel.onboarding_status != ONBOARDING_COMPLETED:
            return {"success": False, "error": "Personnel has not completed onboarding"}

        vendor_id = personnel.linked_vendor_id
        if not vendor_id:
            vendor_id = await self._store.rpc(
                "create_personnel_vendor", {"p_personnel_id": personnel_id}
            )
            if not vendor_id:
                raise StoreError(f"Failed to create vendor for personnel {personnel_id}")
            vendor_id = str(vendor_id)

        qb_id = await self.sync_vendor(vendor_id)
        await self._log(
            "vendor",
            "auto-sync",
            "success",
            entity_id=vendor_id,
            quickbooks_id=qb_id,
            details={"personnel_id": personnel_id, "personnel_name": personnel.full_name},
        )
        self._logger.info("personnel_synced", personnel=personnel.full_name, quickbooks_id=qb_id)
        return {
            "success": True,
            "message": "Personnel synced to QuickBooks successfully",
            "vendor_id": vendor_id,
            "quickbooks_vendor_id": qb_id,
        }

    # === Bills ===

    async def _expense_account_ref(self) -> dict[str, str]:
        for account_type in ACCOUNT_TYPE_PREFERENCE:
            try:
                accounts = await self._qb.query_entities(
                    "Account",
                    f"SELECT * FROM Account WHERE AccountType = '{account_type}' MAXRESULTS 1",
                )
            except QuickBooksError as e:
                self._logger.warning("account_lookup_failed", account_type=account_type, error=str(e))
                continue
            if accounts:
                return {"value": str(accounts[0]["Id"]), "name": accounts[0].get("Name", "")}
        raise QuickBooksError("No expense account found in QuickBooks")

    async def create_bill(self, bill_id: str) -> dict[str, Any]:
        """Create a QuickBooks Bill for a local vendor bill."""
        row = await self._store.select_one("vendor_bills", filters=[eq("id", bill_id)])
        if row is None:
            raise RecordNotFoundError(f"Vendor bill not found: {bill_id}")
        lines = await self._store.select("vendor_bill_line_items", filters=[eq("bill_id", bill_id)])
        bill = VendorBill.from_row(row, lines)

        mapping = await self._store.select_one(
            "quickbooks_bill_mappings", filters=[eq("bill_id", bill_id)]
        )
        if mapping and mapping.get("sync_status") == SyncStatus.SYNCED.value:
            return {
                "success": True,
                "message": "Bill already synced",
                "quickbooks_bill_id": mapping.get("quickbooks_bill_id"),
                "quickbooks_doc_number": mapping.get("quickbooks_doc_number"),
            }

        try:
            qb_vendor_id = await self.get_or_create_vendor(bill.vendor_id)
            account_ref = await self._expense_account_ref()
            qb_lines = [
                {
                    "DetailType": "AccountBasedExpenseLineDetail",
                    "Amount": float(line.total),
                    "Description": line.description,
                    "AccountBasedExpenseLineDetail": {"AccountRef": account_ref},
                }
                for line in bill.line_items
            ] or [
                {
                    "DetailType": "AccountBasedExpenseLineDetail",
                    "Amount": float(bill.subtotal),
                    "Description": f"Bill {bill.number}",
                    "AccountBasedExpenseLineDetail": {"AccountRef": account_ref},
                }
            ]
            created = await self._qb.create_entity(
                "Bill",
                _compact(
                    {
                        "VendorRef": {"value": qb_vendor_id},
                        "Line": qb_lines,
                        "TxnDate": bill.bill_date.isoformat() if bill.bill_date else None,
                        "DueDate": bill.due_date.isoformat() if bill.due_date else None,
                        "DocNumber": bill.number,
                        "PrivateNote": bill.notes or f"CommandX Vendor Bill: {bill.number}",
                    }
                ),
            )
            qb_id = str(created["Id"])
            doc_number = created.get("DocNumber")
            await self._store.upsert(
                "quickbooks_bill_mappings",
                {
                    "bill_id": bill_id,
                    "quickbooks_bill_id": qb_id,
                    "quickbooks_doc_number": doc_number,
                    "sync_status": SyncStatus.SYNCED,
                    "last_synced_at": _now(),
                    "error_message": None,
                },
                on_conflict="bill_id",
            )
        except (QuickBooksError, StoreError) as e:
            self._logger.error("bill_sync_failed", bill_id=bill_id, error=str(e))
            await self._store.upsert(
                "quickbooks_bill_mappings",
                {
                    "bill_id": bill_id,
                    "quickbooks_bill_id": "",
                    "sync_status": SyncStatus.ERROR,
                    "error_message": str(e),
                    "updated_at": _now(),
                },
                on_conflict="bill_id",
            )
            await self._log(
                "vendor_bill", "create", "failed", entity_id=bill_id, error_message=str(e)
            )
            raise

        await self._log(
            "vendor_bill",
            "create",
            "success",
            entity_id=bill_id,
            quickbooks_id=qb_id,
            details={"doc_number": doc_number, "vendor_name": bill.vendor_name},
        )
        self._logger.info("bill_synced", number=bill.number, quickbooks_id=qb_id)
        return {
            "success": True,
            "quickbooks_bill_id": qb_id,
            "quickbooks_doc_number": doc_number,
        }

    # === Invoices ===

    async def create_invoice(self, invoice_id: str) -> dict[str, Any]:
        """Create a QuickBooks Invoice for a local invoice."""
        row = await self._store.select_one("invoices", filters=[eq("id", invoice_id)])
        if row is None:
            raise RecordNotFoundError(f"Invoice not found: {invoice_id}")
        lines = await self._store.select(
            "invoice_line_items", filters=[eq("invoice_id", invoice_id)]
        )
        invoice = Invoice.from_row(row, lines)

        mapping = await self._store.select_one(
            "quickbooks_invoice_mappings", filters=[eq("invoice_id", invoice_id)]
        )
        if mapping:
            return {
                "success": True,
                "message": "Invoice already synced",
                "quickbooks_invoice_id": mapping.get("quickbooks_invoice_id"),
            }

        try:
            customer_ref = await self.get_or_create_customer(invoice.customer_id)
            qb_lines = []
            for line in invoice.line_items:
                price, amount = invoice_line_payload(line.quantity, line.unit_price, line.total)
                qb_lines.append(
                    {
                        "DetailType": "SalesItemLineDetail",
                        "Amount": float(amount),
                        "Description": line.description,
                        "SalesItemLineDetail": {
                            "Qty": float(line.quantity),
                            "UnitPrice": float(price),
                        },
                    }
                )
            if invoice.tax_amount > 0:
                qb_lines.append(
                    {
                        "DetailType": "SalesItemLineDetail",
                        "Amount": float(invoice.tax_amount),
                        "Description": "Sales Tax",
                        "SalesItemLineDetail": {
                            "Qty": 1,
                            "UnitPrice": float(invoice.tax_amount),
                        },
                    }
                )
            created = await self._qb.create_entity(
                "Invoice",
                _compact(
                    {
                        "CustomerRef": {"value": customer_ref},
                        "Line": qb_lines,
                        "DueDate": invoice.due_date.isoformat() if invoice.due_date else None,
                        "DocNumber": invoice.number,
                        "PrivateNote": f"CommandX Invoice: {invoice.number}",
                    }
                ),
            )
            qb_id = str(created["Id"])
            doc_number = created.get("DocNumber")
            await self._store.insert(
                "quickbooks_invoice_mappings",
                {
                    "invoice_id": invoice_id,
                    "quickbooks_invoice_id": qb_id,
                    "quickbooks_doc_number": doc_number,
                    "sync_status": SyncStatus.SYNCED,
                    "synced_at": _now(),
                },
            )
        except (QuickBooksError, StoreError) as e:
            self._logger.error("invoice_sync_failed", invoice_id=invoice_id, error=str(e))
            await self._log("invoice", "create", "failed", entity_id=invoice_id, error_message=str(e))
            raise

        await self._log(
            "invoice",
            "create",
            "success",
            entity_id=invoice_id,
            quickbooks_id=qb_id,
            details={"doc_number": doc_number},
        )
        self._logger.info("invoice_synced", number=invoice.number, quickbooks_id=qb_id)
        return {
            "success": True,
            "quickbooks_invoice_id": qb_id,
            "quickbooks_doc_number": doc_number,
        }

    async def void_invoice(self, invoice_id: str) -> dict[str, Any]:
        """Void the QuickBooks copy of an invoice, unless it has payments."""
        mapping = await self._store.select_one(
            "quickbooks_invoice_mappings",
            "quickbooks_invoice_id, sync_status",
            [eq("invoice_id", invoice_id)],
        )
        if mapping is None:
            return {"success": True, "message": "Invoice not synced to QuickBooks", "voided": False}
        if mapping.get("sync_status") == SyncStatus.VOIDED.value:
            return {"success": True, "message": "Invoice already voided in QuickBooks", "voided": True}

        qb_id = str(mapping["quickbooks_invoice_id"])
        current = (await self._qb.request("GET", f"/invoice/{qb_id}")).get("Invoice") or {}
        total = Decimal(str(current.get("TotalAmt", 0)))
        balance = Decimal(str(current.get("Balance", 0)))
        if balance != total:
            paid = total - balance
            message = (
                f"Cannot void invoice with payments. The invoice has ${paid:.2f} in payments. "
                "Please void the payments in QuickBooks first."
            )
            await self._store.update(
                "quickbooks_invoice_mappings",
                {"sync_status": SyncStatus.VOID_FAILED, "updated_at": _now()},
                [eq("invoice_id", invoice_id)],
            )
            await self._log(
                "invoice",
                "void",
                "error",
                entity_id=invoice_id,
                quickbooks_id=qb_id,
                error_message=message,
            )
            self._logger.warning("invoice_void_blocked", invoice_id=invoice_id, paid=str(paid))
            return {"success": False, "error": message, "voided": False}

        await self._qb.request(
            "POST",
            "/invoice",
            json={"Id": qb_id, "SyncToken": current.get("SyncToken")},
            params={"operation": "void"},
        )
        await self._store.update(
            "quickbooks_invoice_mappings",
            {"sync_status": SyncStatus.VOIDED, "updated_at": _now()},
            [eq("invoice_id", invoice_id)],
        )
        await self._log("invoice", "void", "success", entity_id=invoice_id, quickbooks_id=qb_id)
        self._logger.info("invoice_voided", invoice_id=invoice_id, quickbooks_id=qb_id)
        return {"success": True, "message": "Invoice voided in QuickBooks", "voided": True}
