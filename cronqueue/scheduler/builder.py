"""
Fluent job definitions.

    scheduler.schedule("reports.nightly", build_report).daily().hours(3).retries(5, base=30)
    scheduler.schedule("billing.jobs:ChargeCards").every_five_minutes().concurrency(2)

The builder always edits one "active" JobSpec. Modifiers called before any
schedule() edit a draft under a throwaway key; the draft is renamed in place
(keeping everything staged on it) as soon as it gets a name.
"""
import builtins
from datetime import datetime, timedelta, tzinfo
from typing import Any, Callable, Iterable, Optional, Union
from uuid import uuid4

from cronqueue.clock import Clock, SystemClock, as_instant
from cronqueue.domain import cron as cron_expr
from cronqueue.domain.errors import DefinitionError
from cronqueue.domain.handlers import Deferred, Direct, Handler, is_resolvable
from cronqueue.domain.models import JobSpec
from cronqueue.domain.states import Jitter


class JobRegistry(dict[str, JobSpec]):
    """Job definitions of one scheduler, keyed by job name (or draft key)."""

    def rename(self, old: str, new: str) -> None:
        if old == new:
            return
        if new in self:
            raise DefinitionError(f"Job '{new}' already defined")
        self[new] = self.pop(old)


def _preset(expression: str) -> Callable[["JobBuilder"], "JobBuilder"]:
    def apply(self: "JobBuilder") -> "JobBuilder":
        return self.cron(expression)
    apply.__doc__ = f"Runs on '{expression}'."
    return apply


def _field_editor(index: int, label: str) -> Callable[..., "JobBuilder"]:
    def apply(self: "JobBuilder", value: Union[int, str, Iterable[int]] = "*") -> "JobBuilder":
        spec = self.active()
        expression = cron_expr.replace_field(spec.cron, index, value)
        spec.parsed = cron_expr.parse(expression)
        spec.cron = spec.parsed.expression
        return self
    apply.__doc__ = f"Sets the {label} field of the cron expression (starting from '0 0 0 * * *')."
    return apply


def _to_handler(handler: Union[Callable[..., Any], str, None]) -> Optional[Handler]:
    if handler is None:
        return None
    if isinstance(handler, str):
        if not is_resolvable(handler):
            raise DefinitionError(f"Unknown handler '{handler}'. Provide a callable or a valid 'module:attr' identifier.")
        return Deferred(handler)
    if callable(handler):
        return Direct(handler)
    raise DefinitionError(f"Handler for a job must be callable or an identifier, got {type(handler).__name__}")


class JobBuilder:
    def __init__(self, registry: Optional[JobRegistry] = None, clock: Optional[Clock] = None):
        self.jobs = registry if registry is not None else JobRegistry()
        self.clock = clock or SystemClock()
        self._active: Optional[str] = None
        self._draft = f"draft:{uuid4().hex}"

    # Core helpers -------------------------------------------------------

    @property
    def active_name(self) -> Optional[str]:
        """Name of the job being edited, None while editing a draft."""
        if self._active is None or self._active == self._draft:
            return None
        return self._active

    def active(self) -> JobSpec:
        """The JobSpec being edited; starts a draft if nothing is selected yet."""
        if self._active is None:
            self._active = self._draft
        if self._active not in self.jobs:
            self.jobs[self._active] = JobSpec()
        return self.jobs[self._active]

    def defined(self) -> dict[str, JobSpec]:
        """Named jobs only (no draft)."""
        return {name: spec for name, spec in self.jobs.items() if name != self._draft}

    def _rename_draft(self, name: str) -> None:
        self.jobs.rename(self._draft, name)
        self._active = name

    def _assign(self, **values: Any) -> "JobBuilder":
        spec = self.active()
        for key, value in values.items():
            setattr(spec, key, value)
        return self

    def _push(self, key: str, fn: Callable[..., Any]) -> "JobBuilder":
        if not callable(fn):
            raise DefinitionError(f"{key} expects a callable")
        getattr(self.active(), key).append(fn)
        return self

    def _tz(self) -> Optional[tzinfo]:
        return self.clock.now().tzinfo

    # Definition ---------------------------------------------------------

    def schedule(self, name: str, handler: Union[Callable[..., Any], str, None] = None) -> "JobBuilder":
        """
        Names the active job (creating it if needed) and optionally sets its
        handler. Without a handler, a new `name` must be an importable
        identifier; it is checked now and resolved again when the job runs.
        """
        name = (name or "").strip()
        if not name:
            raise DefinitionError("Missing job name or identifier.")

        resolved = _to_handler(handler)
        if resolved is None and name not in self.jobs and not is_resolvable(name):
            raise DefinitionError(f"Unknown identifier '{name}'. Provide a callable or an importable class with handle().")

        if self._active is not None and self._active == self._draft and self._draft in self.jobs:
            if resolved is not None:
                self.jobs[self._draft].handler = resolved
            self._rename_draft(name)
        else:
            if name not in self.jobs:
                self.jobs[name] = JobSpec(handler=resolved)
            elif resolved is not None:
                self.jobs[name].handler = resolved
            self._active = name

        return self

    def select(self, name: Optional[str]) -> str:
        """
        Picks the job a dispatch targets and returns its name.

        An unknown name is accepted when it is an importable identifier; a
        pending draft is then renamed to it so staged args and modifiers carry
        over.
        """
        if name is not None:
            name = name.strip()
            if not name:
                raise DefinitionError("Missing job name or identifier.")

            if name not in self.jobs:
                if not is_resolvable(name):
                    raise DefinitionError(f"Unknown job '{name}'. Define it first with schedule() or use an importable identifier.")
                if self._active == self._draft and self._draft in self.jobs:
                    self._rename_draft(name)
                else:
                    self.jobs[name] = JobSpec()
            self._active = name
        elif self.active_name is None:
            raise DefinitionError("No job selected. Pass a name or call schedule() first.")

        return self._active

    # Modifiers ----------------------------------------------------------

    def args(self, args: dict[str, Any]) -> "JobBuilder":
        """Default args for cron occurrences and for the next dispatch()."""
        return self._assign(args=dict(args))

    def at(self, when: Union[datetime, str]) -> "JobBuilder":
        """Stages run_at for the next dispatch() of the active job."""
        return self._assign(run_at=as_instant(when, self._tz()))

    def delay(self, seconds: float) -> "JobBuilder":
        return self._assign(run_at=self.clock.now() + timedelta(seconds=max(0, seconds)))

    def queue(self, queue: str) -> "JobBuilder":
        return self._assign(queue=queue)

    def priority(self, n: int) -> "JobBuilder":
        """Lower runs first."""
        return self._assign(priority=int(n))

    def lease(self, seconds: int) -> "JobBuilder":
        return self._assign(lease=max(1, int(seconds)))

    def concurrency(self, n: int) -> "JobBuilder":
        """How many runs of this job may execute at once across all workers."""
        return self._assign(concurrency=max(1, int(n)))

    def retries(self, max: int, base: int = 1, cap: int = 60, jitter: str = Jitter.FULL) -> "JobBuilder":
        try:
            jitter = Jitter(jitter)
        except ValueError as e:
            raise DefinitionError(f"Unknown jitter mode '{jitter}', expected 'full' or 'none'") from e
        return self._assign(
            max_attempts=builtins.max(1, int(max)),
            backoff_base=int(base),
            backoff_cap=int(cap),
            jitter=jitter,
        )

    # Cron ---------------------------------------------------------------

    def cron(self, expression: str) -> "JobBuilder":
        """Five or six field cron expression (six = with seconds)."""
        parsed = cron_expr.parse(expression)
        return self._assign(cron=parsed.expression, parsed=parsed)

    seconds = _field_editor(0, "seconds")
    minutes = _field_editor(1, "minutes")
    hours = _field_editor(2, "hours")
    days = _field_editor(3, "day-of-month")
    months = _field_editor(4, "month")

    every_second = _preset("* * * * * *")
    every_two_seconds = _preset("*/2 * * * * *")
    every_five_seconds = _preset("*/5 * * * * *")
    every_ten_seconds = _preset("*/10 * * * * *")
    every_fifteen_seconds = _preset("*/15 * * * * *")
    every_twenty_seconds = _preset("*/20 * * * * *")
    every_thirty_seconds = _preset("*/30 * * * * *")
    every_minute = _preset("0 * * * * *")
    every_two_minutes = _preset("0 */2 * * * *")
    every_three_minutes = _preset("0 */3 * * * *")
    every_four_minutes = _preset("0 */4 * * * *")
    every_five_minutes = _preset("0 */5 * * * *")
    every_ten_minutes = _preset("0 */10 * * * *")
    every_fifteen_minutes = _preset("0 */15 * * * *")
    every_thirty_minutes = _preset("0 */30 * * * *")
    hourly = _preset("0 0 * * * *")
    every_two_hours = _preset("0 0 */2 * * *")
    every_three_hours = _preset("0 0 */3 * * *")
    every_four_hours = _preset("0 0 */4 * * *")
    every_six_hours = _preset("0 0 */6 * * *")
    daily = _preset("0 0 0 * * *")
    weekly = _preset("0 0 0 * * 0")
    monthly = _preset("0 0 0 1 * *")
    quarterly = _preset("0 0 0 1 */3 *")
    yearly = _preset("0 0 0 1 1 *")
    weekdays = _preset("0 0 0 * * 1-5")
    weekends = _preset("0 0 0 * * 0,6")
    sundays = _preset("0 0 0 * * 0")
    mondays = _preset("0 0 0 * * 1")
    tuesdays = _preset("0 0 0 * * 2")
    wednesdays = _preset("0 0 0 * * 3")
    thursdays = _preset("0 0 0 * * 4")
    fridays = _preset("0 0 0 * * 5")
    saturdays = _preset("0 0 0 * * 6")

    # Filters and hooks --------------------------------------------------

    def when(self, fn: Callable[[dict], Any]) -> "JobBuilder":
        """Run only if every when() filter returns truthy."""
        return self._push("when", fn)

    def skip(self, fn: Callable[[dict], Any]) -> "JobBuilder":
        """Skip the attempt if any skip() filter returns truthy."""
        return self._push("skip", fn)

    def before(self, fn: Callable[[dict], Any]) -> "JobBuilder":
        return self._push("before", fn)

    def then(self, fn: Callable[[dict], Any]) -> "JobBuilder":
        return self._push("then", fn)

    def catch(self, fn: Callable[[BaseException, dict], Any]) -> "JobBuilder":
        """Called with (error, args) when the handler raises."""
        return self._push("catch", fn)

    def finally_(self, fn: Callable[[dict], Any]) -> "JobBuilder":
        return self._push("finally_", fn)


