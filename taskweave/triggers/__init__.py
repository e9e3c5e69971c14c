"""Cron and file-watch triggers."""

from __future__ import annotations

from .scheduler import WorkflowScheduler, build_cron_trigger, next_fire_time
from .watcher import FileWatcher

__all__ = [
    "FileWatcher",
    "WorkflowScheduler",
    "build_cron_trigger",
    "next_fire_time",
]
