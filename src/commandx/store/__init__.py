"""Hosted database and object storage access."""

from commandx.store.supabase import (
    Filter,
    RecordNotFoundError,
    StoreError,
    SupabaseClient,
    eq,
    gt,
    gte,
    ilike,
    in_,
    is_null,
    jsonable,
    lt,
    lte,
    neq,
    not_null,
)

__all__ = [
    "SupabaseClient",
    "StoreError",
    "RecordNotFoundError",
    "Filter",
    "eq",
    "neq",
    "gt",
    "gte",
    "lt",
    "lte",
    "is_null",
    "not_null",
    "in_",
    "ilike",
    "jsonable",
]
