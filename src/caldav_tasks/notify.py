"""
Sync-status summaries for the presentation layer.

The synchronizer is handed a listener explicitly; there is no global
subscriber.  Summaries carry raw values only and formatting is left to
the consumer.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass
class SyncSummary:
    last_sync_at: datetime | None
    pending_push: int
    pending_deletions: int
    conflicts: int = 0
    errors: int = 0


class SyncStatusListener(Protocol):
    def on_sync_status(self, summary: SyncSummary) -> None: ...
