from enum import StrEnum, auto

class RunOutcome(StrEnum):
    SUCCEEDED = auto()   # Handler returned, row deleted
    RETRIED = auto()     # Handler failed, row rescheduled with backoff
    EXHAUSTED = auto()   # Handler failed on its last attempt, row deleted
    SKIPPED = auto()     # A when/skip filter vetoed this attempt, row left as-is

class Jitter(StrEnum):
    FULL = auto()        # Uniform in [0, raw]
    NONE = auto()        # Exactly raw (at least one second)
