from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from cronqueue.domain.cron import CronSchedule
from cronqueue.domain.handlers import Handler
from cronqueue.domain.states import Jitter

Filter = Callable[[dict], Any]
Hook = Callable[..., Any]

@dataclass
class JobSpec:
    # None means "import the job's own name when it runs"
    handler: Optional[Handler] = None

    queue: str = "default"
    priority: int = 100
    lease: int = 60
    concurrency: int = 1

    max_attempts: int = 1
    backoff_base: int = 1
    backoff_cap: int = 60
    jitter: Jitter = Jitter.FULL

    cron: Optional[str] = None
    parsed: Optional[CronSchedule] = None

    # Defaults for cron occurrences and for the next dispatch()
    args: dict[str, Any] = field(default_factory=dict)

    when: list[Filter] = field(default_factory=list)
    skip: list[Filter] = field(default_factory=list)
    before: list[Hook] = field(default_factory=list)
    then: list[Hook] = field(default_factory=list)
    catch: list[Hook] = field(default_factory=list)
    finally_: list[Hook] = field(default_factory=list)

    # Staged run_at for the next dispatch(), cleared once it is used
    run_at: Optional[datetime] = None

@dataclass
class ClaimedRun:
    id: int
    name: str
    args: dict[str, Any]
    attempts: int
    run_at: datetime
    locks: list[str] = field(default_factory=list)
