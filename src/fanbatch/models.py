import json
import typing as t
from datetime import datetime, timezone

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from fanbatch.status import NOT_FOUND, JobStatus, SubmissionMethod

log = structlog.get_logger(__name__)

Usage = dict[str, t.Any]


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _render_detail(detail: t.Any) -> str:
    if isinstance(detail, str):
        return detail
    return json.dumps(detail, default=str)


class JobError(BaseModel):
    """Job-level failure, rendered to text only when it reaches the caller."""

    kind: t.Literal[
        "validation",
        "submission",
        "reconciliation",
        "provider",
        "parse",
        "fetch",
        "not_found",
    ]
    message: str
    provider_detail: t.Any | None = None

    @classmethod
    def from_exception(
        cls,
        *,
        kind: str,
        error: BaseException,
        prefix: str | None = None,
    ) -> "JobError":
        detail: t.Any | None = None
        if isinstance(error, httpx.HTTPStatusError):
            try:
                detail = error.response.json()
            except ValueError:
                detail = error.response.text or None
        message = str(error) or error.__class__.__name__
        if prefix:
            message = f"{prefix}: {message}"
        return cls(kind=kind, message=message, provider_detail=detail)

    def render(self) -> str:
        if self.provider_detail in (None, "", {}, []):
            return self.message
        return f"{self.message}\nProvider detail: {_render_detail(self.provider_detail)}"


class ItemError(BaseModel):
    """Failure of a single request inside a batch."""

    kind: t.Literal["errored", "expired", "canceled", "parse_error", "missing"]
    message: str
    provider_detail: t.Any | None = None

    def render(self) -> str:
        if self.provider_detail in (None, "", {}, []):
            return self.message
        return f"{self.message} {_render_detail(self.provider_detail)}"


class ParsedItem(BaseModel):
    """One provider result item, normalized."""

    key: str | None = None
    line_number: int | None = None
    content: str | None = None
    error: ItemError | None = None
    usage: Usage = Field(default_factory=dict)

    @property
    def is_parse_error(self) -> bool:
        return self.error is not None and self.error.kind == "parse_error"


class Job(BaseModel):
    """
    A batch submission to one provider, tracked from submission to results.

    ``internal_job_id`` is frozen. Status only moves forward through
    :meth:`advance`, and terminal jobs are never re-polled.
    """

    internal_job_id: str = Field(frozen=True)
    provider_id: str
    submission_method: SubmissionMethod
    original_prompts: list[str] = Field(default_factory=list)
    single_conversation: bool = False
    provider_job_id: str | None = None
    status: JobStatus = JobStatus.PENDING
    provider_state: str | None = None
    result: str | None = None
    error: JobError | None = None
    usage_data: Usage | None = None
    created_at: datetime = Field(default_factory=utcnow)
    last_checked_at: datetime = Field(default_factory=utcnow)
    raw_success_payload: dict[str, t.Any] | None = Field(default=None, repr=False)
    results_locator: str | None = None
    raw_results: str | None = Field(default=None, repr=False)
    awaiting_results_locator: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def touch(self) -> None:
        self.last_checked_at = utcnow()

    def advance(self, status: JobStatus) -> bool:
        """
        Move the job forward to ``status``.

        Returns
        -------
        bool
            ``False`` when the move would leave a terminal state or go backwards.
        """
        if self.is_terminal or status.rank < self.status.rank:
            log.debug(
                event="Ignored status transition",
                internal_job_id=self.internal_job_id,
                current=self.status.value,
                requested=status.value,
            )
            return False
        self.status = status
        return True

    def mark_failed(self, error: JobError) -> None:
        self.status = JobStatus.FAILED
        self.error = error
        self.result = error.render()


class SubmissionAck(BaseModel):
    internal_job_id: str
    provider_job_id: str | None = None
    status: JobStatus
    message: str | None = None

    @classmethod
    def from_job(cls, job: Job) -> "SubmissionAck":
        return cls(
            internal_job_id=job.internal_job_id,
            provider_job_id=job.provider_job_id,
            status=job.status,
            message=job.result if job.status is JobStatus.FAILED else None,
        )


class JobStatusView(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    status: JobStatus | t.Literal["NOT_FOUND"]
    result: str | None = None
    last_checked_at: datetime | None = None
    message: str | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusView":
        return cls(status=job.status, result=job.result, last_checked_at=job.last_checked_at)

    @classmethod
    def not_found(cls) -> "JobStatusView":
        return cls(status=NOT_FOUND, message="Job not found.")


class JobResultView(JobStatusView):
    usage_data: Usage | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResultView":
        return cls(
            status=job.status,
            result=job.result,
            usage_data=job.usage_data,
            last_checked_at=job.last_checked_at,
        )

    @classmethod
    def not_found(cls) -> "JobResultView":
        return cls(status=NOT_FOUND, message="Job not found.")


class FileUploadStatusView(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    provider_job_id: str
    status: JobStatus
    provider_state: str | None = None
    results_locator: str | None = None
    result: str | None = None
    last_checked_at: datetime
    raw: dict[str, t.Any] | None = None


class FileUploadResultView(BaseModel):
    provider_job_id: str
    results: list[dict[str, t.Any]]
    usage_data: Usage
