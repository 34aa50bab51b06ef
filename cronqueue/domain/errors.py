class SchedulerError(Exception):
    """Base exception for cronqueue errors."""
    pass

class DefinitionError(SchedulerError):
    """A job is missing its name or handler, or an identifier cannot be resolved."""
    pass

class ScheduleOverflowError(SchedulerError):
    """A cron expression has no matching instant within the search horizon."""
    pass

class PostDispatchConflict(SchedulerError):
    def __init__(self, run_id):
        self.run_id = run_id
        super().__init__(f"Cannot retime run #{run_id}; it has already been claimed or finished")
