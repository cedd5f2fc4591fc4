"""
Scheduling and execution of watches and Skip The Queue entries
"""
from .base import ExecutionOutcome, ExecutionResult
from .commands import CommandResult, CommandService, STQInput, WatchInput
from .job_log import JobLogger
from .queue import QueueSessionManager
from .scheduler import JobKind, JobScheduler
from .stq import STQExecutor
from .watch import WatchExecutor

__all__ = [
    "ExecutionOutcome",
    "ExecutionResult",
    "CommandResult",
    "CommandService",
    "STQInput",
    "WatchInput",
    "JobLogger",
    "QueueSessionManager",
    "JobKind",
    "JobScheduler",
    "STQExecutor",
    "WatchExecutor",
]
