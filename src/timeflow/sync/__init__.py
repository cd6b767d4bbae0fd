"""Calendar sync engine: per-provider adapters and the per-user manager."""

from timeflow.sync.adapter import ProviderSyncAdapter, add_months, sync_window
from timeflow.sync.manager import SyncManager

__all__ = ["ProviderSyncAdapter", "SyncManager", "add_months", "sync_window"]
