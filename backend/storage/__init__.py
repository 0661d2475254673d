# storage/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT — STORAGE MODULE
# ============================================================================
# Order persistence: interfaces, in-memory backend and Supabase backend
# ============================================================================

from storage.order_store import (
    IEventLedger,
    IOrderStore,
    InMemoryEventLedger,
    InMemoryOrderStore,
)

from storage.supabase_store import (
    SupabaseClient,
    SupabaseEventLedger,
    SupabaseOrderStore,
)

__all__ = [
    "IEventLedger",
    "IOrderStore",
    "InMemoryEventLedger",
    "InMemoryOrderStore",
    "SupabaseClient",
    "SupabaseEventLedger",
    "SupabaseOrderStore",
]
