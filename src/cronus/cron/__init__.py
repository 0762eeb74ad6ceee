"""Cron job engine.

This package provides the scheduling core:
- Cron expression parsing and next-trigger computation
- A durable, thread-safe job registry
- Concurrent subprocess execution with recorded outcomes
- The trigger loop that ties them together

Example:
    from cronus.cron import CronStorage, JobDispatcher, JobRegistry, Scheduler

    registry = JobRegistry(CronStorage("~/.cronus/jobs.json"))
    registry.load()
    dispatcher = JobDispatcher(registry)
    scheduler = Scheduler(registry, dispatcher)

    registry.add("echo", ["hello"], "*/5 * * * *")
    await scheduler.start()
"""

from cronus.cron.executor import JobDispatcher, OutcomeMessage
from cronus.cron.expression import (
    CronExpression,
    describe,
    next_trigger,
    parse,
    upcoming,
    validate_cron_expression,
)
from cronus.cron.registry import JobRegistry
from cronus.cron.scheduler import Scheduler, SchedulerState
from cronus.cron.storage import CronStorage
from cronus.cron.types import CronJob, ExecutionOutcome, JobKind, OutcomeStatus

__all__ = [
    # Registry
    "JobRegistry",
    # Types
    "CronJob",
    "ExecutionOutcome",
    "JobKind",
    "OutcomeStatus",
    # Storage
    "CronStorage",
    # Executor
    "JobDispatcher",
    "OutcomeMessage",
    # Scheduler
    "Scheduler",
    "SchedulerState",
    # Expression utilities
    "CronExpression",
    "parse",
    "next_trigger",
    "upcoming",
    "validate_cron_expression",
    "describe",
]
