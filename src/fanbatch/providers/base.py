from __future__ import annotations

import typing as t
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx
import structlog

from fanbatch.config import ProviderSettings
from fanbatch.exceptions import (
    ProviderNotConfiguredError,
    ProviderResponseError,
    UnsupportedSubmissionError,
)
from fanbatch.models import ItemError, JobError, ParsedItem
from fanbatch.status import JobStatus, SubmissionMethod
from fanbatch.utils.files import encode_jsonl, is_parse_error_record, parse_jsonl_text
from fanbatch.utils.logging import mask_headers

if t.TYPE_CHECKING:
    from fanbatch.transport import FileTransport

log = structlog.get_logger(__name__)

JSONL_CONTENT_TYPE = "application/jsonl"


@dataclass(frozen=True)
class ProviderRequestSpec:
    """
    Description of one HTTP call against a provider API.

    Parameters
    ----------
    method : str
        HTTP method.
    url : str
        Absolute request URL.
    headers : dict[str, str]
        Request headers, credentials included.
    json_body : typing.Any, optional
        JSON payload.
    content : bytes, optional
        Raw request body.
    files : dict[str, typing.Any], optional
        Multipart files.
    data : dict[str, str], optional
        Multipart form fields.
    params : dict[str, str], optional
        Query parameters.
    """

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    json_body: t.Any = None
    content: bytes | None = None
    files: dict[str, t.Any] | None = None
    data: dict[str, str] | None = None
    params: dict[str, str] | None = None


@dataclass(frozen=True)
class PollSnapshot:
    """
    Normalized view of one provider status response.

    Parameters
    ----------
    status : JobStatus
        Status mapped onto the internal enum.
    provider_state : str
        Provider status string as reported.
    results_locator : str
        Output file id or results URL, empty when the payload has none.
    error : JobError | None
        Job-level failure reported by the provider.
    summary : str
        Human-readable status text for the job ``result``.
    raw : dict[str, typing.Any]
        Full status payload.
    """

    status: JobStatus
    provider_state: str
    results_locator: str = ""
    error: JobError | None = None
    summary: str = ""
    raw: dict[str, t.Any] = field(default_factory=dict)


def summarize_counts(counts: t.Mapping[str, t.Any] | None) -> str:
    """Render non-zero request counts as ``Succeeded : 2 Errored : 1``."""
    if not counts:
        return ""
    parts = [
        f"{key.replace('_', ' ').capitalize()} : {value}"
        for key, value in counts.items()
        if isinstance(value, int) and value
    ]
    return " ".join(parts)


def dig(payload: t.Any, *path: str | int) -> t.Any:
    """Follow a key/index path through nested JSON, returning ``None`` on any miss."""
    current = payload
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
            current = current[step]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(step)
        if current is None:
            return None
    return current


class BaseProvider(ABC):
    """
    Standard interface between the batch engines and a provider Batch API.

    Providers implement:
    - build_request_item: one batch request item in the provider's shape
    - parse_poll_response: map a status payload onto a ``PollSnapshot``
    - parse_result_item: map one result record onto a ``ParsedItem``
    """

    name: str = "base"
    display_name: str = "Base"
    supports_inline: bool = True
    supports_file_upload: bool = False
    # field carrying the results locator in status payloads, ``None`` when the
    # provider delivers results in the status payload itself
    results_locator_field: str | None = None
    # ordered (substring, status) pairs matched against the lower-cased state
    status_table: tuple[tuple[str, JobStatus], ...] = ()

    def __init__(self, *, settings: ProviderSettings) -> None:
        self.settings = settings

    @property
    @abstractmethod
    def api_key(self) -> str | None: ...

    @abstractmethod
    def _auth_headers(self, *, api_key: str) -> dict[str, str]: ...

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def build_api_headers(self) -> dict[str, str]:
        """
        Build authenticated headers for provider API calls.

        Returns
        -------
        dict[str, str]
            Headers carrying the provider credential.

        Raises
        ------
        ProviderNotConfiguredError
            If no API key is configured for this provider.
        """
        api_key = self.api_key
        if not api_key:
            raise ProviderNotConfiguredError(f"{self.display_name} API key not configured.")
        return self._auth_headers(api_key=api_key)

    async def execute(
        self,
        *,
        client: httpx.AsyncClient,
        spec: ProviderRequestSpec,
    ) -> httpx.Response:
        """
        Send one provider request and raise on HTTP errors.

        Parameters
        ----------
        client : httpx.AsyncClient
            Client used for the call.
        spec : ProviderRequestSpec
            Request description.

        Returns
        -------
        httpx.Response
            Successful provider response.
        """
        log.debug(
            event="Sending provider request",
            provider=self.name,
            method=spec.method,
            url=spec.url,
            headers=mask_headers(spec.headers),
        )
        response = await client.request(
            method=spec.method,
            url=spec.url,
            headers=spec.headers,
            json=spec.json_body,
            content=spec.content,
            files=spec.files,
            data=spec.data,
            params=spec.params,
        )
        response.raise_for_status()
        return response

    # -- formatting ---------------------------------------------------------

    def request_key(self, *, position: int) -> str:
        return f"request-{position}"

    @abstractmethod
    def build_request_item(
        self,
        *,
        key: str,
        prompts: t.Sequence[str],
        temperature: float,
        system_prompt: str | None,
    ) -> dict[str, t.Any]:
        """Build one batch request item holding ``prompts`` as user turns."""

    def format_batch_request(
        self,
        *,
        prompts: t.Sequence[str],
        single_conversation: bool,
        temperature: float,
        system_prompt: str | None,
    ) -> list[dict[str, t.Any]]:
        """
        Turn prompts into provider batch request items.

        Parameters
        ----------
        prompts : typing.Sequence[str]
            Prompts in submission order.
        single_conversation : bool
            Put every prompt into one multi-turn item keyed ``request-1``.
        temperature : float
            Sampling temperature.
        system_prompt : str | None
            Optional system prompt attached to every item.

        Returns
        -------
        list[dict[str, typing.Any]]
            Request items, keyed ``request-{n}`` from 1.
        """
        if single_conversation:
            return [
                self.build_request_item(
                    key=self.request_key(position=1),
                    prompts=list(prompts),
                    temperature=temperature,
                    system_prompt=system_prompt,
                )
            ]
        return [
            self.build_request_item(
                key=self.request_key(position=position),
                prompts=[prompt],
                temperature=temperature,
                system_prompt=system_prompt,
            )
            for position, prompt in enumerate(prompts, start=1)
        ]

    def build_jsonl_lines(self, *, items: t.Sequence[dict[str, t.Any]]) -> list[dict[str, t.Any]]:
        """Convert request items into batch-file lines."""
        return list(items)

    # -- submission ---------------------------------------------------------

    def extract_provider_job_id(self, *, payload: dict[str, t.Any]) -> str:
        batch_id = payload.get("id")
        if not batch_id:
            raise ProviderResponseError(
                f"{self.display_name} batch creation response carries no batch id."
            )
        return str(batch_id)

    def build_inline_create_request(
        self,
        *,
        items: t.Sequence[dict[str, t.Any]],
        internal_job_id: str,
    ) -> ProviderRequestSpec:
        raise UnsupportedSubmissionError(
            f"{self.display_name} does not accept inline batch submissions."
        )

    def build_file_create_request(
        self,
        *,
        file_handle: str,
        internal_job_id: str,
    ) -> ProviderRequestSpec:
        raise UnsupportedSubmissionError(
            f"{self.display_name} does not accept file-based batch submissions."
        )

    def build_upload_request(
        self,
        *,
        content: bytes,
        display_name: str,
        content_type: str,
    ) -> ProviderRequestSpec:
        raise UnsupportedSubmissionError(f"{self.display_name} does not accept file uploads.")

    def extract_file_handle(self, *, payload: dict[str, t.Any]) -> str:
        file_id = payload.get("id")
        if not file_id:
            raise ProviderResponseError(f"{self.display_name} file upload returned no file id.")
        return str(file_id)

    async def upload_file(
        self,
        *,
        client: httpx.AsyncClient,
        content: bytes,
        display_name: str,
        content_type: str = JSONL_CONTENT_TYPE,
    ) -> str:
        """
        Upload a batch input file and return the provider file handle.

        Parameters
        ----------
        client : httpx.AsyncClient
            Client used for the upload.
        content : bytes
            File content.
        display_name : str
            File name shown by the provider.
        content_type : str, optional
            MIME type of the content.

        Returns
        -------
        str
            Provider file handle.
        """
        spec = self.build_upload_request(
            content=content,
            display_name=display_name,
            content_type=content_type,
        )
        response = await self.execute(client=client, spec=spec)
        return self.extract_file_handle(payload=response.json())

    async def create_inline_batch(
        self,
        *,
        client: httpx.AsyncClient,
        items: t.Sequence[dict[str, t.Any]],
        internal_job_id: str,
    ) -> str:
        spec = self.build_inline_create_request(items=items, internal_job_id=internal_job_id)
        response = await self.execute(client=client, spec=spec)
        return self.extract_provider_job_id(payload=response.json())

    async def create_batch_from_file(
        self,
        *,
        client: httpx.AsyncClient,
        file_handle: str,
        internal_job_id: str,
    ) -> str:
        spec = self.build_file_create_request(
            file_handle=file_handle,
            internal_job_id=internal_job_id,
        )
        response = await self.execute(client=client, spec=spec)
        return self.extract_provider_job_id(payload=response.json())

    async def submit_batch(
        self,
        *,
        items: t.Sequence[dict[str, t.Any]],
        internal_job_id: str,
        method: SubmissionMethod,
        client: httpx.AsyncClient,
        transport: FileTransport,
    ) -> str:
        """
        Create a provider batch job from request items.

        Providers without inline submission, and ``file_upload`` submissions,
        go through a generated JSONL file uploaded with ``transport``.

        Parameters
        ----------
        items : typing.Sequence[dict[str, typing.Any]]
            Request items from :meth:`format_batch_request`.
        internal_job_id : str
            Job the batch belongs to.
        method : SubmissionMethod
            How the prompts are handed to the provider.
        client : httpx.AsyncClient
            Client used for the batch creation call.
        transport : FileTransport
            File transport used for file-based submissions.

        Returns
        -------
        str
            Provider job id.
        """
        if not items:
            raise ValueError("Cannot process an empty request batch")

        file_based = method is SubmissionMethod.FILE_UPLOAD or not self.supports_inline
        if not file_based:
            return await self.create_inline_batch(
                client=client,
                items=items,
                internal_job_id=internal_job_id,
            )

        if not self.supports_file_upload:
            raise UnsupportedSubmissionError(
                f"{self.display_name} does not accept file-based batch submissions."
            )
        jsonl_lines = self.build_jsonl_lines(items=items)
        log.debug(
            event="Built JSONL lines",
            provider=self.name,
            request_count=len(jsonl_lines),
        )
        file_handle = await transport.upload_bytes(
            content=encode_jsonl(jsonl_lines),
            display_name=f"{internal_job_id}.jsonl",
            content_type=JSONL_CONTENT_TYPE,
        )
        log.info(
            event="Uploaded batch file",
            provider=self.name,
            file_handle=file_handle,
            request_count=len(jsonl_lines),
        )
        return await self.create_batch_from_file(
            client=client,
            file_handle=file_handle,
            internal_job_id=internal_job_id,
        )

    # -- status -------------------------------------------------------------

    @abstractmethod
    def build_poll_request(self, *, provider_job_id: str) -> ProviderRequestSpec: ...

    def map_status(self, provider_state: str | None) -> JobStatus:
        """
        Map a provider status string onto the internal enum.

        The first table entry whose substring occurs in the lower-cased state
        wins; anything unmatched is ``PENDING``.
        """
        state = (provider_state or "").lower()
        for pattern, status in self.status_table:
            if pattern in state:
                return status
        return JobStatus.PENDING

    @abstractmethod
    def parse_poll_response(self, *, payload: dict[str, t.Any]) -> PollSnapshot: ...

    def parse_file_upload_poll_response(self, *, payload: dict[str, t.Any]) -> PollSnapshot:
        """Map the status payload of a batch queried directly by its provider job id."""
        return self.parse_poll_response(payload=payload)

    def short_job_id(self, provider_job_id: str) -> str:
        return provider_job_id.rsplit("/", 1)[-1]

    def completed_message(self, *, provider_job_id: str) -> str:
        return (
            f"{self.display_name} batch job {self.short_job_id(provider_job_id)} SUCCEEDED. "
            "Results are available."
        )

    def running_message(self) -> str:
        return f"{self.display_name} job is still running, please check later."

    # -- results ------------------------------------------------------------

    def extract_inline_items(self, *, payload: dict[str, t.Any]) -> list[dict[str, t.Any]] | None:
        """Return result items embedded in a status payload, ``None`` for file-based results."""
        return None

    @abstractmethod
    def build_results_request(self, *, locator: str) -> ProviderRequestSpec: ...

    @abstractmethod
    def parse_result_item(self, record: dict[str, t.Any], *, position: int) -> ParsedItem: ...

    def parse_results_text(self, text: str) -> list[ParsedItem]:
        """
        Parse a JSONL result document into items.

        A malformed line becomes a ``parse_error`` item for that line and never
        aborts the rest of the document.
        """
        items: list[ParsedItem] = []
        for position, record in enumerate(parse_jsonl_text(text), start=1):
            if is_parse_error_record(record):
                log.warning(
                    event="Malformed result line",
                    provider=self.name,
                    line_number=record["line_number"],
                )
                items.append(
                    ParsedItem(
                        line_number=record["line_number"],
                        error=ItemError(
                            kind="parse_error",
                            message=record["error"],
                            provider_detail=record["raw_line"],
                        ),
                    )
                )
                continue
            items.append(self.parse_result_item_safely(record, position=position))
        return items

    def parse_result_item_safely(self, record: t.Any, *, position: int) -> ParsedItem:
        """Parse one result record, turning a wrong-shaped record into a ``parse_error`` item."""
        try:
            if not isinstance(record, dict):
                raise TypeError(f"expected a JSON object, got {type(record).__name__}")
            return self.parse_result_item(record, position=position)
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
            log.warning(
                event="Unexpected result record shape",
                provider=self.name,
                line_number=position,
                error=str(exc),
            )
            return ParsedItem(
                line_number=position,
                error=ItemError(
                    kind="parse_error",
                    message=f"Unexpected result record: {exc}",
                    provider_detail=record,
                ),
            )
