from .clock import FixedClock, SystemClock
from .domain.errors import DefinitionError, PostDispatchConflict, ScheduleOverflowError, SchedulerError
from .domain.states import Jitter, RunOutcome
from .scheduler.builder import JobBuilder, JobRegistry
from .scheduler.dispatcher import DispatchedRun
from .scheduler.service import Scheduler

__all__ = [
    "DefinitionError",
    "DispatchedRun",
    "FixedClock",
    "Jitter",
    "JobBuilder",
    "JobRegistry",
    "PostDispatchConflict",
    "RunOutcome",
    "ScheduleOverflowError",
    "Scheduler",
    "SchedulerError",
    "SystemClock",
]
