"""Supabase backend and realtime feed."""

from chatsync.infrastructure.supabase.realtime import (
    RealtimeConnection,
    SupabaseRealtimeFeed,
    realtime_url,
)
from chatsync.infrastructure.supabase.rest import SupabaseBackend

__all__ = [
    "RealtimeConnection",
    "SupabaseBackend",
    "SupabaseRealtimeFeed",
    "realtime_url",
]
