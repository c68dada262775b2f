from __future__ import annotations

import asyncio
import typing as t

import httpx
import structlog

from fanbatch.exceptions import (
    BatchValidationError,
    ProviderResponseError,
    ResultsUnavailableError,
)
from fanbatch.job_store import JobStore
from fanbatch.models import FileUploadResultView, Job, JobError, JobResultView, ParsedItem
from fanbatch.providers import BaseProvider, get_provider
from fanbatch.reconciliation import StatusReconciler
from fanbatch.rendering import render_results
from fanbatch.status import JobStatus
from fanbatch.submission import TransportFactory, unique
from fanbatch.usage import aggregate_usage
from fanbatch.utils.files import is_parse_error_record, parse_jsonl_text
from fanbatch.utils.logging import logging_context

log = structlog.get_logger(__name__)

ClientFactory = t.Callable[[], httpx.AsyncClient]


class ResultNormalizer:
    """
    Turn completed provider batches into rendered text and summed usage.

    Only ``COMPLETED`` jobs are touched; anything else is returned as is.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        providers: t.Mapping[str, BaseProvider],
        reconciler: StatusReconciler,
        transport_factory: TransportFactory,
    ) -> None:
        self._store = store
        self._providers = providers
        self._reconciler = reconciler
        self._transport_factory = transport_factory

    async def get_results(
        self,
        job_ids: t.Sequence[str] | None,
        *,
        single_conversation: bool | None = None,
    ) -> dict[str, JobResultView]:
        """
        Fetch, align and render the results of every job in ``job_ids``.

        Parameters
        ----------
        job_ids : typing.Sequence[str] | None
            Internal job ids.
        single_conversation : bool | None, optional
            Override the single-conversation flag recorded at submission.

        Returns
        -------
        dict[str, JobResultView]
            One view per id; unknown ids map to ``NOT_FOUND``.

        Raises
        ------
        BatchValidationError
            If no job id is given.
        """
        if not job_ids:
            raise BatchValidationError("No job IDs provided.")
        ids = unique(job_ids)
        views = await asyncio.gather(
            *(self._normalize(job_id, single_conversation=single_conversation) for job_id in ids)
        )
        return dict(zip(ids, views))

    async def _normalize(self, job_id: str, *, single_conversation: bool | None) -> JobResultView:
        job = self._store.get(job_id)
        if job is None:
            return JobResultView.not_found()
        if job.status is not JobStatus.COMPLETED:
            return JobResultView.from_job(job)

        single = job.single_conversation if single_conversation is None else single_conversation
        with logging_context(internal_job_id=job.internal_job_id, provider=job.provider_id):
            try:
                provider = get_provider(self._providers, job.provider_id)
                items = await self._load_items(job=job, provider=provider)
                if items:
                    rendered = render_results(
                        items, job.original_prompts, single_conversation=single
                    )
                else:
                    rendered = (
                        f"{provider.display_name} batch job SUCCEEDED, "
                        "but no responses were found."
                    )
                usage = aggregate_usage(item.usage for item in items)
            except Exception as error:
                log.error(
                    event="Result fetch failed",
                    error=str(error),
                    error_type=type(error).__name__,
                )
                job.mark_failed(
                    JobError.from_exception(
                        kind="fetch", error=error, prefix="Failed to fetch results"
                    )
                )
            else:
                job.result = rendered
                job.usage_data = usage
                log.info(
                    event="Mapped batch results to prompts",
                    item_count=len(items),
                    prompt_count=len(job.original_prompts),
                )
            finally:
                job.touch()
        return JobResultView.from_job(job)

    async def _load_items(self, *, job: Job, provider: BaseProvider) -> list[ParsedItem]:
        payload = job.raw_success_payload
        if payload is None:
            if not job.provider_job_id:
                raise ProviderResponseError(f"Job {job.internal_job_id} has no provider job id.")
            snapshot = await self._reconciler.poll(
                provider=provider, provider_job_id=job.provider_job_id
            )
            if snapshot.status is not JobStatus.COMPLETED:
                raise ResultsUnavailableError(
                    f"{provider.display_name} batch is {snapshot.provider_state}, "
                    "results are not available."
                )
            payload = snapshot.raw
            job.raw_success_payload = payload
            job.results_locator = snapshot.results_locator or job.results_locator

        inline = provider.extract_inline_items(payload=payload)
        if inline is not None:
            return [
                provider.parse_result_item_safely(record, position=position)
                for position, record in enumerate(inline, start=1)
            ]

        if job.raw_results is None:
            if not job.results_locator:
                raise ResultsUnavailableError("Batch completed, but no results locator was found.")
            job.raw_results = await self._transport_factory(provider).download_results(
                locator=job.results_locator
            )
        return provider.parse_results_text(job.raw_results)

    async def get_file_upload_results(
        self,
        *,
        provider_job_id: str,
        provider_id: str | None,
    ) -> FileUploadResultView:
        """
        Download the raw results of a file-upload batch by its provider job id.

        Raises
        ------
        BatchValidationError
            If the provider is missing, unknown or takes no file uploads.
        ResultsUnavailableError
            If the batch is not completed or has no results locator.
        """
        if not provider_job_id:
            raise BatchValidationError("A provider job id is required.")
        if not provider_id:
            raise BatchValidationError("A provider id is required for file upload results.")
        provider = get_provider(self._providers, provider_id)
        if not provider.supports_file_upload:
            raise BatchValidationError(
                f"Model {provider_id} not supported for file upload batch result retrieval."
            )

        with logging_context(provider=provider_id, provider_job_id=provider_job_id):
            job = self._store.find_by_provider_job_id(provider_id, provider_job_id)
            locator = job.results_locator if job is not None and job.results_locator else None
            if locator is None:
                snapshot = await self._reconciler.poll(
                    provider=provider, provider_job_id=provider_job_id, file_upload=True
                )
                if snapshot.status is not JobStatus.COMPLETED:
                    raise ResultsUnavailableError(
                        f"Batch is not completed yet. Current state: {snapshot.provider_state}"
                    )
                if not snapshot.results_locator:
                    raise ResultsUnavailableError(
                        "Batch completed, but no output file name found in its metadata."
                    )
                locator = snapshot.results_locator

            text = await self._transport_factory(provider).download_results(locator=locator)
            records = parse_jsonl_text(text)
            items = [
                provider.parse_result_item_safely(record, position=position)
                for position, record in enumerate(records, start=1)
                if not is_parse_error_record(record)
            ]
            usage = aggregate_usage(item.usage for item in items if not item.is_parse_error)
            log.info(event="Downloaded file upload results", line_count=len(records))

        return FileUploadResultView(
            provider_job_id=provider_job_id, results=records, usage_data=usage
        )
