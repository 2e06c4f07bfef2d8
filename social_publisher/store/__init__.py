"""Persistence layer: store contract and its in-memory and Supabase implementations."""

from social_publisher.store.base import SocialStore
from social_publisher.store.memory import MemoryStore
from social_publisher.store.supabase_store import SupabaseConfig, SupabaseStore

__all__ = [
    "SocialStore",
    "MemoryStore",
    "SupabaseConfig",
    "SupabaseStore",
]
