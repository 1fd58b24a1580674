"""CommandX - payroll, billing and QuickBooks sync jobs for a construction back office."""

__version__ = "0.1.0"

from commandx.billing import BillingError, InvoiceService
from commandx.config import configure_logging, get_settings
from commandx.payables import VendorBillService
from commandx.payroll import PayrollRunResult, WeeklyPayrollGenerator
from commandx.quickbooks import QuickBooksClient, QuickBooksSync, QuickBooksTokenManager
from commandx.store import SupabaseClient
from commandx.wh347 import WH347Service

__all__ = [
    # Version
    "__version__",
    # Store
    "SupabaseClient",
    # Payroll
    "WeeklyPayrollGenerator",
    "PayrollRunResult",
    "WH347Service",
    # Billing
    "InvoiceService",
    "VendorBillService",
    "BillingError",
    # QuickBooks
    "QuickBooksTokenManager",
    "QuickBooksClient",
    "QuickBooksSync",
    # Config
    "get_settings",
    "configure_logging",
]
