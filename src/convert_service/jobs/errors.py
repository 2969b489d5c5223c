"""Exceptions raised by the job orchestration core."""

from __future__ import annotations


class ErrorCode:
    CONVERSION_FAILED = 1050
    DOWNLOAD_FAILED = 1200
    FILE_SIZE_LIMIT_EXCEEDED = 1210


class JobServiceError(Exception):
    """Base class for job service failures."""


class JobNotFound(JobServiceError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Unknown job: {job_id}")
        self.job_id = job_id


class StoreUnavailable(JobServiceError):
    """The job store could not be reached."""


class InputAcquisitionError(JobServiceError):
    """Input bytes could not be obtained; the job fails before processing."""

    code = ErrorCode.DOWNLOAD_FAILED

    def __init__(self, message: str, *, job_id: str | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class DownloadFailed(InputAcquisitionError):
    code = ErrorCode.DOWNLOAD_FAILED


class FileSizeLimitExceeded(InputAcquisitionError):
    code = ErrorCode.FILE_SIZE_LIMIT_EXCEEDED


class ConversionError(JobServiceError):
    """Raised by a converter to fail a job with a specific error code."""

    def __init__(self, message: str, code: int = ErrorCode.CONVERSION_FAILED) -> None:
        super().__init__(message)
        self.code = code


class CallbackDeliveryError(JobServiceError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Callback to {url} failed: {reason}")
        self.url = url
        self.reason = reason
