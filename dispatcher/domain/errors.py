class DispatchError(Exception):
    """Base exception for dispatch errors."""
    pass

class ValidationError(DispatchError):
    pass

class BatchSourceError(ValidationError):
    pass

class JobNotFoundError(DispatchError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id

class ReentrancyError(DispatchError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} is already active")
        self.job_id = job_id

class JobAlreadyCompletedError(DispatchError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} has already completed")
        self.job_id = job_id

class RetriableSendError(DispatchError):
    def __init__(self, detail: str, rate_limited: bool = False):
        super().__init__(detail)
        self.detail = detail
        self.rate_limited = rate_limited

class CancellationError(DispatchError):
    pass

class ReportingError(DispatchError):
    def __init__(self, job_id, detail: str, state=None):
        super().__init__(f"Status report for job {job_id} failed: {detail}")
        self.job_id = job_id
        self.detail = detail
        # Terminal JobState when the final report is the one that failed
        self.state = state
