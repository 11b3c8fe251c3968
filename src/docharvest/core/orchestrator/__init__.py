"""Orchestrator - job queue, concurrency control, runner and command surface."""

from .commands import PRINT_DATA_KEY, CommandDispatcher
from .jobs import ActiveJob, Job, JobProgress, kind_for
from .registry import STATE_KEYS, JobRegistry
from .retries import RetryPolicy, is_retryable
from .runner import JobCancelled, JobRunner
from .service import Orchestrator
from .throttle import ConcurrencyController, normalize_concurrency

__all__ = [
    "ActiveJob",
    "CommandDispatcher",
    "ConcurrencyController",
    "Job",
    "JobCancelled",
    "JobProgress",
    "JobRegistry",
    "JobRunner",
    "Orchestrator",
    "PRINT_DATA_KEY",
    "RetryPolicy",
    "STATE_KEYS",
    "is_retryable",
    "kind_for",
    "normalize_concurrency",
]
