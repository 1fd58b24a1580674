"""QuickBooks Online integration for CommandX."""

from commandx.quickbooks.client import QuickBooksClient, escape_query_value
from commandx.quickbooks.errors import (
    ErrorContext,
    ParsedQuickBooksError,
    QBErrorType,
    QuickBooksAuthError,
    QuickBooksError,
    QuickBooksNotConnectedError,
    QuickBooksRateLimitError,
    SuggestedAction,
    error_type_label,
    error_type_variant,
    extract_duplicate_id,
    parse_quickbooks_error,
)
from commandx.quickbooks.oauth import (
    QuickBooksTokenManager,
    build_authorization_url,
    normalize_redirect_uri,
)
from commandx.quickbooks.sync import QuickBooksSync

__all__ = [
    # Connection
    "QuickBooksTokenManager",
    "build_authorization_url",
    "normalize_redirect_uri",
    # API Client
    "QuickBooksClient",
    "escape_query_value",
    # Sync
    "QuickBooksSync",
    # Errors
    "QuickBooksError",
    "QuickBooksAuthError",
    "QuickBooksNotConnectedError",
    "QuickBooksRateLimitError",
    "QBErrorType",
    "SuggestedAction",
    "ErrorContext",
    "ParsedQuickBooksError",
    "parse_quickbooks_error",
    "error_type_label",
    "error_type_variant",
    "extract_duplicate_id",
]
