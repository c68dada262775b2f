from __future__ import annotations

import asyncio
import typing as t
from pathlib import Path

import httpx
import structlog

from fanbatch.exceptions import BatchValidationError, UnknownProviderError
from fanbatch.job_store import JobStore
from fanbatch.models import Job, JobError, SubmissionAck
from fanbatch.providers import BaseProvider
from fanbatch.status import SubmissionMethod
from fanbatch.transport import FileTransport
from fanbatch.utils.logging import logging_context

log = structlog.get_logger(__name__)

ClientFactory = t.Callable[[], httpx.AsyncClient]
TransportFactory = t.Callable[[BaseProvider], FileTransport]


def coerce_method(method: SubmissionMethod | str) -> SubmissionMethod:
    try:
        return SubmissionMethod(method)
    except ValueError:
        raise BatchValidationError(f"Unsupported submission method: {method}") from None


def unique(values: t.Iterable[str]) -> list[str]:
    return list(dict.fromkeys(values))


class SubmissionEngine:
    """
    Fan a prompt set out to several provider batch APIs at once.

    Every requested provider gets a job and an acknowledgement, whatever
    happens to its siblings.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        providers: t.Mapping[str, BaseProvider],
        client_factory: ClientFactory,
        transport_factory: TransportFactory,
    ) -> None:
        self._store = store
        self._providers = providers
        self._client_factory = client_factory
        self._transport_factory = transport_factory

    async def submit(
        self,
        *,
        method: SubmissionMethod | str,
        prompts: t.Sequence[str] | None,
        provider_ids: t.Sequence[str] | None,
        single_conversation: bool = False,
        temperature: float = 1.0,
        system_prompt: str | None = None,
    ) -> dict[str, SubmissionAck]:
        """
        Submit ``prompts`` to every provider in ``provider_ids`` concurrently.

        Parameters
        ----------
        method : SubmissionMethod | str
            ``text_input`` or ``file_upload``.
        prompts : typing.Sequence[str] | None
            Prompts in canonical order.
        provider_ids : typing.Sequence[str] | None
            Target providers; duplicates are submitted once.
        single_conversation : bool, optional
            Send all prompts as one multi-turn request.
        temperature : float, optional
            Sampling temperature.
        system_prompt : str | None, optional
            System prompt attached to every request.

        Returns
        -------
        dict[str, SubmissionAck]
            One acknowledgement per provider id, failures included.

        Raises
        ------
        BatchValidationError
            If no provider is given or no prompts are given. ``file_upload``
            builds its upload file from the prompts, so an already prepared
            JSONL file goes through ``BatchJobManager.submit_batch_file``.
        """
        if not provider_ids:
            raise BatchValidationError("At least one LLM must be selected.")
        submission_method = coerce_method(method)
        prompt_list = list(prompts or [])
        if not prompt_list:
            if submission_method is SubmissionMethod.TEXT_INPUT:
                raise BatchValidationError("Prompts are required for text input method.")
            raise BatchValidationError(
                "Prompts are required to build an upload file; "
                "use submit_batch_file for prepared files."
            )

        targets = unique(provider_ids)
        log.info(
            event="Submitting batch job",
            method=submission_method.value,
            providers=targets,
            prompt_count=len(prompt_list),
            single_conversation=single_conversation,
        )
        acks = await asyncio.gather(
            *(
                self._submit_one(
                    provider_id=provider_id,
                    method=submission_method,
                    prompts=prompt_list,
                    single_conversation=single_conversation,
                    temperature=temperature,
                    system_prompt=system_prompt,
                )
                for provider_id in targets
            )
        )
        return dict(zip(targets, acks))

    async def _submit_one(
        self,
        *,
        provider_id: str,
        method: SubmissionMethod,
        prompts: list[str],
        single_conversation: bool,
        temperature: float,
        system_prompt: str | None,
    ) -> SubmissionAck:
        job = self._store.create(
            provider_id=provider_id,
            submission_method=method,
            original_prompts=prompts,
            single_conversation=single_conversation,
        )
        with logging_context(internal_job_id=job.internal_job_id, provider=provider_id):
            try:
                provider = self._providers.get(provider_id)
                if provider is None:
                    raise UnknownProviderError(provider_id)
                items = provider.format_batch_request(
                    prompts=prompts,
                    single_conversation=single_conversation,
                    temperature=temperature,
                    system_prompt=system_prompt,
                )
                async with self._client_factory() as client:
                    provider_job_id = await provider.submit_batch(
                        items=items,
                        internal_job_id=job.internal_job_id,
                        method=method,
                        client=client,
                        transport=self._transport_factory(provider),
                    )
            except Exception as error:
                return self._fail(job=job, error=error)

            job.provider_job_id = provider_job_id
            log.info(
                event="Batch job submitted",
                provider_job_id=provider_job_id,
                request_count=len(items),
            )
            return SubmissionAck.from_job(job)

    async def submit_file(
        self,
        *,
        local_path: str | Path,
        provider_id: str,
        display_name: str | None = None,
    ) -> SubmissionAck:
        """
        Upload a prepared JSONL batch file and create a provider batch from it.

        Parameters
        ----------
        local_path : str | Path
            Batch file in the provider's own line format.
        provider_id : str
            Target provider.
        display_name : str | None, optional
            Name shown by the provider for the uploaded file.

        Returns
        -------
        SubmissionAck
            Acknowledgement for the new ``file_upload`` job.

        Raises
        ------
        BatchValidationError
            If the provider is unknown or takes no file uploads.
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            raise UnknownProviderError(provider_id)
        if not provider.supports_file_upload:
            raise BatchValidationError(
                f"Unsupported target model for file upload: {provider_id}"
            )

        job = self._store.create(
            provider_id=provider_id, submission_method=SubmissionMethod.FILE_UPLOAD
        )
        with logging_context(internal_job_id=job.internal_job_id, provider=provider_id):
            try:
                file_handle = await self._transport_factory(provider).upload_file(
                    local_path=local_path,
                    display_name=display_name,
                )
                log.info(event="Uploaded batch file", file_handle=file_handle)
                async with self._client_factory() as client:
                    provider_job_id = await provider.create_batch_from_file(
                        client=client,
                        file_handle=file_handle,
                        internal_job_id=job.internal_job_id,
                    )
            except Exception as error:
                return self._fail(job=job, error=error)

            job.provider_job_id = provider_job_id
            log.info(event="Batch job submitted", provider_job_id=provider_job_id)
            return SubmissionAck.from_job(job)

    def _fail(self, *, job: Job, error: Exception) -> SubmissionAck:
        job.mark_failed(
            JobError.from_exception(kind="submission", error=error, prefix="Failed to submit job")
        )
        log.error(
            event="Batch submission failed",
            error=str(error),
            error_type=type(error).__name__,
        )
        return SubmissionAck.from_job(job)
