from .config import ProviderSettings as ProviderSettings
from .core import BatchJobManager as BatchJobManager
from .job_store import JobStore as JobStore
from .status import JobStatus as JobStatus
from .status import SubmissionMethod as SubmissionMethod

__all__ = [
    "BatchJobManager",
    "JobStatus",
    "JobStore",
    "ProviderSettings",
    "SubmissionMethod",
]
