from __future__ import annotations


class DeepciteError(Exception):
    """Base class for engine errors."""


class JobNotFoundError(DeepciteError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobAlreadyRunningError(DeepciteError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} already has an active execution")


class InvalidJobStateError(DeepciteError):
    def __init__(self, job_id: str, state: str, operation: str):
        self.job_id = job_id
        self.state = state
        self.operation = operation
        super().__init__(f"Cannot {operation} job {job_id} in state '{state}'")


class ProviderError(DeepciteError):
    """A single provider call failed."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class CircuitOpenError(ProviderError):
    def __init__(self, provider: str, retry_after: float):
        self.retry_after = retry_after
        super().__init__(provider, f"circuit open, retry after {retry_after:.1f}s")


class ProviderUnavailableError(DeepciteError):
    """Every provider allowed by the routing strategy failed."""

    def __init__(self, attempted: list[str], last_error: str | None = None):
        self.attempted = attempted
        self.last_error = last_error
        detail = f" (last error: {last_error})" if last_error else ""
        super().__init__(f"No language model available; tried {attempted or ['none']}{detail}")
