"""
Engine errors. Each carries enough structure for the API layer to map it
to a response without inspecting the message text.
"""


class EnrichmentError(Exception):
    """Base class for enrichment engine errors."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable


class JobNotFoundError(EnrichmentError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}", recoverable=False)
        self.job_id = job_id


class InvalidJobTransitionError(EnrichmentError):
    def __init__(self, job_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Job {job_id} cannot move from {from_status} to {to_status}", recoverable=False
        )
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status


class JobConflictError(EnrichmentError):
    """A job cannot be created: one is already running or the cooldown is active."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        can_resume: bool = False,
        cooldown_active: bool = False,
        cooldown_days_left: int = 0,
    ):
        super().__init__(message, recoverable=True)
        self.job_id = job_id
        self.can_resume = can_resume
        self.cooldown_active = cooldown_active
        self.cooldown_days_left = cooldown_days_left


class CooldownNotFoundError(EnrichmentError):
    def __init__(self, quota_key: str):
        super().__init__(f"No cooldown recorded for {quota_key}", recoverable=False)
        self.quota_key = quota_key


class NoItemsError(EnrichmentError):
    def __init__(self, quota_key: str):
        super().__init__(f"No contacts to process for {quota_key}", recoverable=False)
        self.quota_key = quota_key
