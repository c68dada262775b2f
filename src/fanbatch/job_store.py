from __future__ import annotations

import itertools
import typing as t

import structlog

from fanbatch.models import Job
from fanbatch.status import SubmissionMethod

log = structlog.get_logger(__name__)

# shared by every store so ids stay unique for the process lifetime
_job_counter = itertools.count(start=1)


def generate_internal_job_id() -> str:
    return f"job-{next(_job_counter)}"


class JobStore:
    """
    In-memory table of batch jobs keyed by internal job id.

    One store is owned by the hosting process and handed to the engines.
    Jobs are never evicted.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}

    def create(
        self,
        *,
        provider_id: str,
        submission_method: SubmissionMethod,
        original_prompts: t.Sequence[str] = (),
        single_conversation: bool = False,
    ) -> Job:
        """
        Insert a new ``PENDING`` job and return it.

        Parameters
        ----------
        provider_id : str
            Provider that owns the job.
        submission_method : SubmissionMethod
            How the prompts reach the provider.
        original_prompts : typing.Sequence[str], optional
            Prompts in submission order.
        single_conversation : bool, optional
            Whether the prompts form one conversation.

        Returns
        -------
        Job
            The stored job.
        """
        job = Job(
            internal_job_id=generate_internal_job_id(),
            provider_id=provider_id,
            submission_method=submission_method,
            original_prompts=list(original_prompts),
            single_conversation=single_conversation,
        )
        self._jobs[job.internal_job_id] = job
        log.debug(event="Job created", internal_job_id=job.internal_job_id, provider=provider_id)
        return job

    def get(self, internal_job_id: str) -> Job | None:
        return self._jobs.get(internal_job_id)

    def find_by_provider_job_id(self, provider_id: str, provider_job_id: str) -> Job | None:
        for job in self._jobs.values():
            if job.provider_id == provider_id and job.provider_job_id == provider_job_id:
                return job
        return None

    def __contains__(self, internal_job_id: object) -> bool:
        return internal_job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def __iter__(self) -> t.Iterator[Job]:
        return iter(list(self._jobs.values()))
