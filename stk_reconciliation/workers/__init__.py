"""Background workers for async processing."""
from .sweeper import BulkSyncSweeper, SweepReport, start_sweeper_worker

__all__ = ["BulkSyncSweeper", "SweepReport", "start_sweeper_worker"]
