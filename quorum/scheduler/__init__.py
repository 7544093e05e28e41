"""Periodic triggers: agent loops, sweeps, due events and queue draining."""

from ..utils.cron import interval_to_cron, next_run
from .due_events import DueEventExecutor, build_event_payload
from .jobs import PeriodicJob, ScheduledJob
from .scheduler import Scheduler

__all__ = [
    "DueEventExecutor",
    "PeriodicJob",
    "ScheduledJob",
    "Scheduler",
    "build_event_payload",
    "interval_to_cron",
    "next_run",
]
