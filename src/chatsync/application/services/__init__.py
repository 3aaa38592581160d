"""Application services."""

from chatsync.application.services.coordinator import (
    ConversationSnapshot,
    ScopeState,
    ViewStateCoordinator,
)
from chatsync.application.services.optimistic import OptimisticTracker

__all__ = [
    "ConversationSnapshot",
    "OptimisticTracker",
    "ScopeState",
    "ViewStateCoordinator",
]
