class JobSchedulerError(Exception):
    """Base class for every error raised by the job scheduler."""


class DuplicateJobError(JobSchedulerError):
    """
    Raised when a live recurring job already owns the requested job name.
    """
    def __init__(self, job_name: str, message: str = None):
        self.job_name = job_name
        super().__init__(message or f"A recurring job named '{job_name}' already exists")


class NotFoundError(JobSchedulerError, KeyError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"No job found with id '{job_id}'")

    def __str__(self) -> str:
        return self.args[0]


class InvalidJobError(JobSchedulerError, ValueError):
    """Raised synchronously when enqueue parameters are rejected."""
