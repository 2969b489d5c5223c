"""
Orchestration core for conversion jobs.
Provides the job record model, pluggable job stores, worker pools, callback
delivery and the reaper, tied together by ``JobOrchestrator`` so front-ends
(HTTP or others) share the same job lifecycle.
"""

from .errors import (
    ConversionError,
    DownloadFailed,
    ErrorCode,
    FileSizeLimitExceeded,
    InputAcquisitionError,
    JobNotFound,
    JobServiceError,
    StoreUnavailable,
)
from .interfaces import ConverterGateway, JobStore, StorageGateway, WorkItem
from .reaper import Reaper
from .records import JobRecord, JobSnapshot, JobState
from .service import JobContext, JobOrchestrator
from .stores import MemoryJobStore, SqlJobStore, create_job_store
