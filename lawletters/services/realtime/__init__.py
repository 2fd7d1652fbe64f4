"""Realtime change notifications for dashboard clients."""
from .connection_manager import ConnectionManager, manager
from .change_feed import (
    ChangeEvent,
    DashboardMirror,
    dispatch_changes,
    pending_changes,
    pop_changes,
    record_change,
)

__all__ = [
    "ConnectionManager",
    "manager",
    "ChangeEvent",
    "DashboardMirror",
    "dispatch_changes",
    "pending_changes",
    "pop_changes",
    "record_change",
]
