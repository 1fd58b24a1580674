"""QuickBooks Online errors and their classification into actionable types."""

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

DUPLICATE_ID_PATTERN = re.compile(r"Id=(\d+)")


class QuickBooksError(Exception):
    """Base exception for QuickBooks API errors."""

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class QuickBooksAuthError(QuickBooksError):
    """Token exchange or refresh was rejected."""

    pass


class QuickBooksNotConnectedError(QuickBooksError):
    """No connected company is configured."""

    pass


class QuickBooksRateLimitError(QuickBooksError):
    """QuickBooks throttled the request (HTTP 429)."""

    pass


class QBErrorType(str, Enum):
    VENDOR_DELETED = "vendor_deleted"
    VENDOR_NOT_FOUND = "vendor_not_found"
    CUSTOMER_DELETED = "customer_deleted"
    CUSTOMER_NOT_FOUND = "customer_not_found"
    AUTH_ERROR = "auth_error"
    RATE_LIMIT = "rate_limit"
    STALE_OBJECT = "stale_object"
    DUPLICATE = "duplicate"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class SuggestedAction(str, Enum):
    RESYNC_VENDOR = "resync_vendor"
    RESYNC_CUSTOMER = "resync_customer"
    RECONNECT = "reconnect"
    RETRY = "retry"
    WAIT = "wait"
    NONE = "none"


@dataclass
class ErrorContext:
    vendor_name: str | None = None
    vendor_id: str | None = None
    customer_name: str | None = None
    customer_id: str | None = None
    bill_number: str | None = None
    invoice_number: str | None = None


@dataclass
class ParsedQuickBooksError:
    type: QBErrorType
    title: str
    description: str
    actionable: bool
    suggested_action: SuggestedAction
    vendor_name: str | None = None
    vendor_id: str | None = None
    customer_name: str | None = None
    customer_id: str | None = None
    technical_details: str | None = None


def _mentions_vendor(msg: str) -> bool:
    return "Vendor" in msg or "vendor" in msg


def _mentions_customer(msg: str) -> bool:
    return "Customer" in msg or "customer" in msg


@dataclass(frozen=True)
class _Rule:
    type: QBErrorType
    matches: Callable[[str], bool]
    title: str
    actionable: bool
    action: SuggestedAction


# Order matters: the first matching rule wins.
_RULES: tuple[_Rule, ...] = (
    _Rule(
        QBErrorType.VENDOR_DELETED,
        lambda m: "Invalid Reference Id" in m and _mentions_vendor(m) and "deleted" in m,
        "Vendor Deleted in QuickBooks",
        True,
        SuggestedAction.RESYNC_VENDOR,
    ),
    _Rule(
        QBErrorType.VENDOR_NOT_FOUND,
        lambda m: ("Invalid Reference Id" in m or "Vendor not found" in m)
        and _mentions_vendor(m),
        "Vendor Not Found in QuickBooks",
        True,
        SuggestedAction.RESYNC_VENDOR,
    ),
    _Rule(
        QBErrorType.CUSTOMER_DELETED,
        lambda m: "Invalid Reference Id" in m and _mentions_customer(m) and "deleted" in m,
        "Customer Deleted in QuickBooks",
        True,
        SuggestedAction.RESYNC_CUSTOMER,
    ),
    _Rule(
        QBErrorType.AUTH_ERROR,
        lambda m: "401" in m
        or "Unauthorized" in m
        or "AuthenticationFailed" in m
        or ("Token" in m and "expired" in m)
        or "refresh token" in m,
        "QuickBooks Connection Expired",
        True,
        SuggestedAction.RECONNECT,
    ),
    _Rule(
        QBErrorType.RATE_LIMIT,
        lambda m: "429" in m
        or "RateLimitExceeded" in m
        or "rate limit" in m
        or "Too Many Requests" in m,
        "QuickBooks Rate Limit",
        True,
        SuggestedAction.WAIT,
    ),
    _Rule(
        QBErrorType.STALE_OBJECT,
        lambda m: "Stale Object" in m or "SyncToken" in m,
        "Sync Conflict",
        True,
        SuggestedAction.RETRY,
    ),
    _Rule(
        QBErrorType.DUPLICATE,
        lambda m: "Duplicate" in m or "already exists" in m,
        "Duplicate Record",
        False,
        SuggestedAction.NONE,
    ),
    _Rule(
        QBErrorType.VALIDATION,
        lambda m: "Validation" in m or "required" in m or "invalid" in m,
        "Validation Error",
        True,
        SuggestedAction.RETRY,
    ),
)


def _describe(error_type: QBErrorType, ctx: ErrorContext) -> str:
    if error_type == QBErrorType.VENDOR_DELETED:
        if ctx.vendor_name:
            return (
                f'The vendor "{ctx.vendor_name}" has been deleted in QuickBooks. '
                "Re-sync the vendor to create it again, or restore it in QuickBooks."
            )
        return (
            "The vendor for this bill has been deleted in QuickBooks. "
            "Re-sync the vendor to create it again."
        )
    if error_type == QBErrorType.VENDOR_NOT_FOUND:
        if ctx.vendor_name:
            return (
                f'The vendor "{ctx.vendor_name}" could not be found in QuickBooks. '
                "Try re-syncing the vendor."
            )
        return (
            "The vendor for this bill could not be found in QuickBooks. "
            "Try re-syncing the vendor."
        )
    if error_type == QBErrorType.CUSTOMER_DELETED:
        if ctx.customer_name:
            return (
                f'The customer "{ctx.customer_name}" has been deleted in QuickBooks. '
                "Re-sync the customer to create it again, or restore it in QuickBooks."
            )
        return (
            "The customer has been deleted in QuickBooks. "
            "Re-sync the customer to create it again."
        )
    return {
        QBErrorType.AUTH_ERROR: (
            "The QuickBooks connection has expired. "
            "Please reconnect to QuickBooks in settings."
        ),
        QBErrorType.RATE_LIMIT: (
            "QuickBooks is temporarily limiting requests. "
            "Please wait a few minutes and try again."
        ),
        QBErrorType.STALE_OBJECT: (
            "The record was modified in QuickBooks while syncing. Please try again."
        ),
        QBErrorType.DUPLICATE: "A record with this information already exists in QuickBooks.",
        QBErrorType.VALIDATION: (
            "QuickBooks rejected the data. Please check the bill details and try again."
        ),
    }.get(
        error_type,
        "An unexpected error occurred while syncing to QuickBooks. Please try again.",
    )


def parse_quickbooks_error(
    message: str, context: ErrorContext | None = None
) -> ParsedQuickBooksError:
    """Classify a QuickBooks error message.

    Each rule is tried against the message as given and lowercased, so
    lowercase keywords match regardless of the original casing.
    """
    ctx = context or ErrorContext()
    lowered = message.lower()
    for rule in _RULES:
        if rule.matches(lowered) or rule.matches(message):
            return ParsedQuickBooksError(
                type=rule.type,
                title=rule.title,
                description=_describe(rule.type, ctx),
                actionable=rule.actionable,
                suggested_action=rule.action,
                vendor_name=ctx.vendor_name,
                vendor_id=ctx.vendor_id,
                customer_name=ctx.customer_name,
                customer_id=ctx.customer_id,
                technical_details=message,
            )

    return ParsedQuickBooksError(
        type=QBErrorType.UNKNOWN,
        title="QuickBooks Sync Failed",
        description=_describe(QBErrorType.UNKNOWN, ctx),
        actionable=True,
        suggested_action=SuggestedAction.RETRY,
        vendor_name=ctx.vendor_name,
        vendor_id=ctx.vendor_id,
        technical_details=message,
    )


_LABELS = {
    QBErrorType.VENDOR_DELETED: "Vendor Issue",
    QBErrorType.VENDOR_NOT_FOUND: "Vendor Issue",
    QBErrorType.CUSTOMER_DELETED: "Customer Issue",
    QBErrorType.CUSTOMER_NOT_FOUND: "Customer Issue",
    QBErrorType.AUTH_ERROR: "Connection Issue",
    QBErrorType.RATE_LIMIT: "Rate Limited",
    QBErrorType.STALE_OBJECT: "Sync Conflict",
    QBErrorType.DUPLICATE: "Duplicate",
    QBErrorType.VALIDATION: "Validation Error",
    QBErrorType.UNKNOWN: "Sync Error",
}


def error_type_label(error_type: QBErrorType) -> str:
    return _LABELS[error_type]


def error_type_variant(error_type: QBErrorType) -> str:
    """Severity bucket: ``destructive``, ``warning`` or ``default``."""
    if error_type in (
        QBErrorType.AUTH_ERROR,
        QBErrorType.VENDOR_DELETED,
        QBErrorType.CUSTOMER_DELETED,
    ):
        return "destructive"
    if error_type in (
        QBErrorType.RATE_LIMIT,
        QBErrorType.STALE_OBJECT,
        QBErrorType.VALIDATION,
    ):
        return "warning"
    return "default"


def is_duplicate_name_error(message: str) -> bool:
    return "Duplicate Name Exists" in message or "6240" in message


def extract_duplicate_id(message: str) -> str | None:
    """The existing entity id carried by a duplicate-name error, if any."""
    match = DUPLICATE_ID_PATTERN.search(message)
    return match.group(1) if match else None
