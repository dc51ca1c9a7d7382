from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class JobRecordExistsError(Exception):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job record already exists: {job_id}")
        self.job_id = job_id


class StageError(Exception):
    """Unrecoverable failure inside one worker stage."""

    def __init__(self, *, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage
        self.message = message


class JobTransitionError(Exception):
    def __init__(self, *, job_id: str, current: str, target: str) -> None:
        super().__init__(f"job transition not allowed: {job_id} {current} -> {target}")
        self.job_id = job_id
        self.current = current
        self.target = target
