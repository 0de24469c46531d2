"""Cron matching, job persistence, execution and the run loop."""

from wallet_cron.scheduler.cron import is_valid_expression, matches, should_run, validate_expression
from wallet_cron.scheduler.executor import ActionExecutor, max_native_amount
from wallet_cron.scheduler.runner import JobRunner
from wallet_cron.scheduler.store import JobStore

__all__ = [
    "ActionExecutor",
    "JobRunner",
    "JobStore",
    "is_valid_expression",
    "matches",
    "max_native_amount",
    "should_run",
    "validate_expression",
]
