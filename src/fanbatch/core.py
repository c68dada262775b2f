"""
Main endpoint for callers.
Exposes ``BatchJobManager``, which wires the job store, provider adapters and
the submission, status and result engines together.
"""

from __future__ import annotations

import typing as t
from pathlib import Path

import httpx
import structlog

from fanbatch.config import ProviderSettings
from fanbatch.exceptions import BatchValidationError
from fanbatch.job_store import JobStore
from fanbatch.models import (
    FileUploadResultView,
    FileUploadStatusView,
    JobResultView,
    JobStatusView,
    SubmissionAck,
)
from fanbatch.providers import BaseProvider, build_providers
from fanbatch.reconciliation import StatusReconciler
from fanbatch.results import ResultNormalizer
from fanbatch.status import SubmissionMethod
from fanbatch.submission import ClientFactory, SubmissionEngine, TransportFactory
from fanbatch.transport import HttpFileTransport

log = structlog.get_logger(__name__)


class BatchJobManager:
    """
    Batch job lifecycle manager for several LLM provider batch APIs.

    Parameters
    ----------
    settings : ProviderSettings | None, optional
        Provider credentials and endpoints, read from the environment when omitted.
    store : JobStore | None, optional
        Job table; a fresh one is created when omitted.
    client_factory : typing.Callable[[], httpx.AsyncClient] | None, optional
        Builds the HTTP client used for each provider call.
    transport_factory : typing.Callable[[BaseProvider], FileTransport] | None, optional
        Builds the file transport for a provider.
    providers : dict[str, BaseProvider] | None, optional
        Provider adapters keyed by id, all discovered adapters by default.
    """

    def __init__(
        self,
        *,
        settings: ProviderSettings | None = None,
        store: JobStore | None = None,
        client_factory: ClientFactory | None = None,
        transport_factory: TransportFactory | None = None,
        providers: dict[str, BaseProvider] | None = None,
    ) -> None:
        self.settings = settings or ProviderSettings.from_env()
        self.store = store if store is not None else JobStore()
        self.providers = providers if providers is not None else build_providers(self.settings)
        self._client_factory = client_factory or self._default_client_factory
        self._transport_factory = transport_factory or self._default_transport_factory

        self.submission = SubmissionEngine(
            store=self.store,
            providers=self.providers,
            client_factory=self._client_factory,
            transport_factory=self._transport_factory,
        )
        self.reconciler = StatusReconciler(
            store=self.store,
            providers=self.providers,
            client_factory=self._client_factory,
        )
        self.normalizer = ResultNormalizer(
            store=self.store,
            providers=self.providers,
            reconciler=self.reconciler,
            transport_factory=self._transport_factory,
        )

    def _default_client_factory(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.http_timeout_seconds)

    def _default_transport_factory(self, provider: BaseProvider) -> HttpFileTransport:
        return HttpFileTransport(provider=provider, client_factory=self._client_factory)

    async def submit_batch_job(
        self,
        method: SubmissionMethod | str,
        prompts: t.Sequence[str] | None,
        provider_ids: t.Sequence[str] | None,
        is_single_batch_chat: bool = False,
        temperature: float = 1.0,
        system_prompt: str | None = None,
    ) -> dict[str, SubmissionAck]:
        """
        Submit prompts to every selected provider's batch API.

        Parameters
        ----------
        method : SubmissionMethod | str
            ``text_input`` or ``file_upload``.
        prompts : typing.Sequence[str] | None
            Prompts in canonical order.
        provider_ids : typing.Sequence[str] | None
            Target provider ids.
        is_single_batch_chat : bool, optional
            Treat the prompts as one conversation.
        temperature : float, optional
            Sampling temperature.
        system_prompt : str | None, optional
            System prompt attached to every request.

        Returns
        -------
        dict[str, SubmissionAck]
            One acknowledgement per provider, failed submissions included.

        Raises
        ------
        BatchValidationError
            If no provider or no prompts are given. Prepared JSONL files are
            submitted with :meth:`submit_batch_file` instead of ``file_upload``.
        """
        return await self.submission.submit(
            method=method,
            prompts=prompts,
            provider_ids=provider_ids,
            single_conversation=is_single_batch_chat,
            temperature=temperature,
            system_prompt=system_prompt,
        )

    async def submit_batch_file(
        self,
        local_path: str | Path,
        provider_id: str,
        display_name: str | None = None,
    ) -> SubmissionAck:
        """Upload a prepared batch file and start a ``file_upload`` job."""
        return await self.submission.submit_file(
            local_path=local_path,
            provider_id=provider_id,
            display_name=display_name,
        )

    async def get_batch_job_status(
        self,
        job_ids: t.Sequence[str] | None,
        is_file_upload: bool = False,
        provider_id: str | None = None,
    ) -> dict[str, JobStatusView] | FileUploadStatusView:
        """
        Reconcile job status with the providers.

        With ``is_file_upload`` the first id is a provider job id and a single
        ``FileUploadStatusView`` is returned.
        """
        if not job_ids:
            raise BatchValidationError("No job IDs provided.")
        if is_file_upload:
            return await self.reconciler.get_file_upload_status(
                provider_job_id=job_ids[0],
                provider_id=provider_id,
            )
        return await self.reconciler.get_status(job_ids)

    async def get_batch_job_result(
        self,
        job_ids: t.Sequence[str] | None,
        is_single_batch_chat: bool | None = None,
        is_file_upload: bool = False,
        provider_id: str | None = None,
    ) -> dict[str, JobResultView] | FileUploadResultView:
        """
        Fetch and render the results of completed jobs.

        With ``is_file_upload`` the first id is a provider job id and the raw
        result lines are returned as a ``FileUploadResultView``.
        """
        if not job_ids:
            raise BatchValidationError("No job IDs provided.")
        if is_file_upload:
            return await self.normalizer.get_file_upload_results(
                provider_job_id=job_ids[0],
                provider_id=provider_id,
            )
        return await self.normalizer.get_results(
            job_ids,
            single_conversation=is_single_batch_chat,
        )
