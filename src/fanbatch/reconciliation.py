from __future__ import annotations

import asyncio
import typing as t

import httpx
import structlog

from fanbatch.exceptions import BatchValidationError
from fanbatch.job_store import JobStore
from fanbatch.models import FileUploadStatusView, Job, JobError, JobStatusView, utcnow
from fanbatch.providers import BaseProvider, PollSnapshot, get_provider
from fanbatch.status import JobStatus, SubmissionMethod
from fanbatch.submission import unique
from fanbatch.utils.logging import logging_context

log = structlog.get_logger(__name__)

ClientFactory = t.Callable[[], httpx.AsyncClient]


def apply_poll_snapshot(*, job: Job, provider: BaseProvider, snapshot: PollSnapshot) -> None:
    """
    Fold a provider status snapshot into a non-terminal job.

    A ``COMPLETED`` report from a provider whose results live behind a
    locator only counts once the locator is present; until then the job
    stays ``RUNNING`` and is flagged for another poll.
    """
    if job.is_terminal:
        return
    job.provider_state = snapshot.provider_state

    if snapshot.status is JobStatus.FAILED:
        job.mark_failed(
            snapshot.error
            or JobError(
                kind="provider",
                message=(
                    f"{provider.display_name} batch job ended in state "
                    f"{snapshot.provider_state}."
                ),
            )
        )
        log.info(event="Batch job failed", provider_state=snapshot.provider_state)
        return

    if snapshot.status is JobStatus.COMPLETED:
        if provider.results_locator_field and not snapshot.results_locator:
            job.advance(JobStatus.RUNNING)
            job.awaiting_results_locator = True
            job.result = (
                f"{provider.display_name} reported {snapshot.provider_state} "
                "without a results locator, please check later."
            )
            log.warning(
                event="Terminal status without results locator",
                provider_state=snapshot.provider_state,
                locator_field=provider.results_locator_field,
            )
            return
        job.awaiting_results_locator = False
        job.results_locator = snapshot.results_locator or None
        job.raw_success_payload = snapshot.raw
        job.advance(JobStatus.COMPLETED)
        job.result = snapshot.summary or provider.completed_message(
            provider_job_id=job.provider_job_id or ""
        )
        log.info(event="Batch job completed", has_results_locator=bool(snapshot.results_locator))
        return

    job.advance(snapshot.status)
    if job.status is JobStatus.RUNNING:
        job.result = provider.running_message()


class StatusReconciler:
    """
    Bring stored jobs up to date with their providers.

    Polling is caller driven: each call makes at most one status request per
    non-terminal job.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        providers: t.Mapping[str, BaseProvider],
        client_factory: ClientFactory,
    ) -> None:
        self._store = store
        self._providers = providers
        self._client_factory = client_factory

    async def get_status(self, job_ids: t.Sequence[str] | None) -> dict[str, JobStatusView]:
        """
        Reconcile every job in ``job_ids`` concurrently.

        Parameters
        ----------
        job_ids : typing.Sequence[str] | None
            Internal job ids.

        Returns
        -------
        dict[str, JobStatusView]
            One view per id; unknown ids map to ``NOT_FOUND``.

        Raises
        ------
        BatchValidationError
            If no job id is given.
        """
        if not job_ids:
            raise BatchValidationError("No job IDs provided.")
        ids = unique(job_ids)
        views = await asyncio.gather(*(self._reconcile(job_id) for job_id in ids))
        return dict(zip(ids, views))

    async def _reconcile(self, job_id: str) -> JobStatusView:
        job = self._store.get(job_id)
        if job is None:
            log.info(event="Job not found", internal_job_id=job_id)
            return JobStatusView.not_found()
        if job.is_terminal:
            return JobStatusView.from_job(job)
        if job.provider_job_id is None:
            # submission still in flight
            return JobStatusView.from_job(job)

        with logging_context(internal_job_id=job.internal_job_id, provider=job.provider_id):
            try:
                provider = get_provider(self._providers, job.provider_id)
                snapshot = await self.poll(provider=provider, provider_job_id=job.provider_job_id)
                apply_poll_snapshot(job=job, provider=provider, snapshot=snapshot)
            except Exception as error:
                log.error(
                    event="Status check failed",
                    provider_job_id=job.provider_job_id,
                    error=str(error),
                    error_type=type(error).__name__,
                )
                job.mark_failed(
                    JobError.from_exception(
                        kind="reconciliation",
                        error=error,
                        prefix="Failed to check status",
                    )
                )
            finally:
                job.touch()
        return JobStatusView.from_job(job)

    async def poll(
        self, *, provider: BaseProvider, provider_job_id: str, file_upload: bool = False
    ) -> PollSnapshot:
        """Issue one status request and map the response."""
        spec = provider.build_poll_request(provider_job_id=provider_job_id)
        async with self._client_factory() as client:
            response = await provider.execute(client=client, spec=spec)
            payload = response.json()
        if file_upload:
            snapshot = provider.parse_file_upload_poll_response(payload=payload)
        else:
            snapshot = provider.parse_poll_response(payload=payload)
        log.debug(
            event="Batch poll tick",
            provider=provider.name,
            provider_job_id=provider_job_id,
            status=snapshot.status.value,
            provider_state=snapshot.provider_state,
            has_results_locator=bool(snapshot.results_locator),
        )
        return snapshot

    async def get_file_upload_status(
        self,
        *,
        provider_job_id: str,
        provider_id: str | None,
    ) -> FileUploadStatusView:
        """
        Query a provider batch directly by its provider job id.

        A stored job owning that batch is updated through the same forward-only
        rules as :meth:`get_status`. Provider errors propagate to the caller.

        Raises
        ------
        BatchValidationError
            If the provider is missing, unknown or takes no file uploads.
        """
        if not provider_job_id:
            raise BatchValidationError("A provider job id is required.")
        if not provider_id:
            raise BatchValidationError("A provider id is required for file upload status checks.")
        provider = get_provider(self._providers, provider_id)
        if not provider.supports_file_upload:
            raise BatchValidationError(
                f"Model {provider_id} not supported for file upload batch status check."
            )

        with logging_context(provider=provider_id, provider_job_id=provider_job_id):
            snapshot = await self.poll(
                provider=provider, provider_job_id=provider_job_id, file_upload=True
            )
            job = self._store.find_by_provider_job_id(provider_id, provider_job_id)
            if job is not None:
                job_snapshot = snapshot
                if job.submission_method is not SubmissionMethod.FILE_UPLOAD:
                    # inline results live in the operation payload, wait for done
                    job_snapshot = provider.parse_poll_response(payload=snapshot.raw)
                apply_poll_snapshot(job=job, provider=provider, snapshot=job_snapshot)
                job.touch()

        return FileUploadStatusView(
            provider_job_id=provider_job_id,
            status=snapshot.status,
            provider_state=snapshot.provider_state,
            results_locator=snapshot.results_locator or None,
            result=snapshot.error.render() if snapshot.error else snapshot.summary or None,
            last_checked_at=job.last_checked_at if job is not None else utcnow(),
            raw=snapshot.raw,
        )
