from __future__ import annotations

import json
import typing as t

import httpx
import structlog

from fanbatch.exceptions import ProviderResponseError
from fanbatch.models import ItemError, JobError, ParsedItem
from fanbatch.providers.base import BaseProvider, PollSnapshot, ProviderRequestSpec, dig
from fanbatch.status import JobStatus

log = structlog.get_logger(__name__)


class GeminiProvider(BaseProvider):
    """
    Gemini Batch API adapter.

    Text prompts are sent inline through ``batchGenerateContent``; the
    operation resource reports ``done``/``error`` and carries the inline
    responses once the batch has finished. File-based batches report their
    results as a ``responsesFile`` to download.
    """

    name = "gemini"
    display_name = "Gemini"
    supports_inline = True
    supports_file_upload = True
    results_locator_field = None
    status_table = (
        ("succeeded", JobStatus.COMPLETED),
        ("completed", JobStatus.COMPLETED),
        ("failed", JobStatus.FAILED),
        ("cancelled", JobStatus.FAILED),
        ("expired", JobStatus.FAILED),
        ("running", JobStatus.RUNNING),
    )

    @property
    def api_key(self) -> str | None:
        return self.settings.gemini_api_key

    def _auth_headers(self, *, api_key: str) -> dict[str, str]:
        return {"x-goog-api-key": api_key}

    def _batch_display_name(self, internal_job_id: str) -> str:
        return f"fanbatch-{internal_job_id}"

    def _batch_create_url(self) -> str:
        return (
            f"{self.settings.gemini_base_url}/models/{self.settings.gemini_model}"
            ":batchGenerateContent"
        )

    def build_request_item(
        self,
        *,
        key: str,
        prompts: t.Sequence[str],
        temperature: float,
        system_prompt: str | None,
    ) -> dict[str, t.Any]:
        request: dict[str, t.Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]} for prompt in prompts],
            "generationConfig": {"temperature": temperature},
        }
        if system_prompt:
            request["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return {"metadata": {"key": key}, "request": request}

    def build_jsonl_lines(self, *, items: t.Sequence[dict[str, t.Any]]) -> list[dict[str, t.Any]]:
        return [{"key": item["metadata"]["key"], "request": item["request"]} for item in items]

    def extract_provider_job_id(self, *, payload: dict[str, t.Any]) -> str:
        name = payload.get("name")
        if not name:
            raise ProviderResponseError("Gemini batch creation response carries no operation name.")
        return str(name)

    def build_inline_create_request(
        self,
        *,
        items: t.Sequence[dict[str, t.Any]],
        internal_job_id: str,
    ) -> ProviderRequestSpec:
        return ProviderRequestSpec(
            method="POST",
            url=self._batch_create_url(),
            headers=self.build_api_headers(),
            json_body={
                "batch": {
                    "display_name": self._batch_display_name(internal_job_id),
                    "input_config": {"requests": {"requests": list(items)}},
                }
            },
        )

    def build_file_create_request(
        self,
        *,
        file_handle: str,
        internal_job_id: str,
    ) -> ProviderRequestSpec:
        file_name = f"files/{file_handle.rsplit('/', 1)[-1]}"
        return ProviderRequestSpec(
            method="POST",
            url=self._batch_create_url(),
            headers=self.build_api_headers(),
            json_body={
                "batch": {
                    "display_name": self._batch_display_name(internal_job_id),
                    "input_config": {"file_name": file_name},
                }
            },
        )

    async def upload_file(
        self,
        *,
        client: httpx.AsyncClient,
        content: bytes,
        display_name: str,
        content_type: str = "application/jsonl",
    ) -> str:
        """
        Upload a batch file with the resumable two-step protocol.

        Parameters
        ----------
        client : httpx.AsyncClient
            Client used for both steps.
        content : bytes
            File content.
        display_name : str
            File name shown by the provider.
        content_type : str, optional
            MIME type of the content.

        Returns
        -------
        str
            Uploaded file resource name, e.g. ``files/abc``.
        """
        headers = self.build_api_headers()
        start = ProviderRequestSpec(
            method="POST",
            url=f"{self.settings.gemini_upload_base_url}/files",
            headers={
                **headers,
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(len(content)),
                "X-Goog-Upload-Header-Content-Type": content_type,
                "Content-Type": "application/json",
            },
            json_body={"file": {"display_name": display_name}},
        )
        start_response = await self.execute(client=client, spec=start)
        upload_url = start_response.headers.get("X-Goog-Upload-URL")
        if not upload_url:
            raise ProviderResponseError(
                "Failed to get X-Goog-Upload-URL from initial upload response."
            )
        log.debug(event="Resumable upload started", provider=self.name, bytes=len(content))

        finalize = ProviderRequestSpec(
            method="POST",
            url=upload_url,
            headers={
                **headers,
                "X-Goog-Upload-Offset": "0",
                "X-Goog-Upload-Command": "upload, finalize",
                "Content-Type": content_type,
            },
            content=content,
        )
        response = await self.execute(client=client, spec=finalize)
        payload = response.json()
        file_name = dig(payload, "file", "name") or payload.get("name")
        if not file_name:
            raise ProviderResponseError("Gemini file upload returned no file name.")
        return str(file_name)

    def build_poll_request(self, *, provider_job_id: str) -> ProviderRequestSpec:
        return ProviderRequestSpec(
            method="GET",
            url=f"{self.settings.gemini_base_url}/{provider_job_id}",
            headers=self.build_api_headers(),
        )

    def _results_locator(self, payload: dict[str, t.Any]) -> str:
        return (
            dig(payload, "response", "responsesFile")
            or dig(payload, "metadata", "output", "responsesFile")
            or dig(payload, "metadata", "outputConfig", "fileName")
            or ""
        )

    def _failed_snapshot(
        self, *, payload: dict[str, t.Any], state: str, locator: str
    ) -> PollSnapshot:
        error = payload["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        return PollSnapshot(
            status=JobStatus.FAILED,
            provider_state=state or "FAILED",
            results_locator=locator,
            error=JobError(
                kind="provider",
                message=f"Gemini job failed: {message}",
                provider_detail=error,
            ),
            raw=payload,
        )

    def parse_poll_response(self, *, payload: dict[str, t.Any]) -> PollSnapshot:
        """
        Map an operation payload onto a snapshot.

        ``error`` wins over everything and only ``done`` completes the batch.
        An unfinished operation is running whatever its batch state reads.
        """
        name = str(payload.get("name") or "")
        state = dig(payload, "metadata", "state") or payload.get("state") or ""
        locator = self._results_locator(payload)

        if payload.get("error"):
            return self._failed_snapshot(payload=payload, state=state, locator=locator)

        if payload.get("done"):
            return PollSnapshot(
                status=JobStatus.COMPLETED,
                provider_state=state or "SUCCEEDED",
                results_locator=locator,
                summary=self.completed_message(provider_job_id=name) if name else "",
                raw=payload,
            )

        return PollSnapshot(
            status=JobStatus.RUNNING,
            provider_state=state or "RUNNING",
            results_locator=locator,
            raw=payload,
        )

    def parse_file_upload_poll_response(self, *, payload: dict[str, t.Any]) -> PollSnapshot:
        """
        Map a file-upload batch payload onto a snapshot from its batch state.

        File-upload results are read from the responses file, so a succeeded
        batch state is enough to complete the batch.
        """
        state = dig(payload, "metadata", "state") or payload.get("state") or ""
        if not state:
            return self.parse_poll_response(payload=payload)

        locator = self._results_locator(payload)
        if payload.get("error"):
            return self._failed_snapshot(payload=payload, state=state, locator=locator)

        status = self.map_status(state)
        name = str(payload.get("name") or "")
        return PollSnapshot(
            status=status,
            provider_state=state,
            results_locator=locator,
            summary=(
                self.completed_message(provider_job_id=name)
                if status is JobStatus.COMPLETED and name
                else ""
            ),
            error=(
                JobError(kind="provider", message=f"Gemini job ended in state {state}.")
                if status is JobStatus.FAILED
                else None
            ),
            raw=payload,
        )

    def extract_inline_items(self, *, payload: dict[str, t.Any]) -> list[dict[str, t.Any]] | None:
        for path in (
            ("response", "inlinedResponses", "inlinedResponses"),
            ("metadata", "output", "inlinedResponses", "inlinedResponses"),
        ):
            items = dig(payload, *path)
            if isinstance(items, list):
                return items
        if self._results_locator(payload):
            return None
        return []

    def build_results_request(self, *, locator: str) -> ProviderRequestSpec:
        return ProviderRequestSpec(
            method="GET",
            url=f"{self.settings.gemini_download_base_url}/{locator}:download",
            headers=self.build_api_headers(),
            params={"alt": "media"},
        )

    def parse_result_item(self, record: dict[str, t.Any], *, position: int) -> ParsedItem:
        key = dig(record, "metadata", "key") or record.get("key")
        response = record.get("response") or {}
        usage = response.get("usageMetadata") if isinstance(response, dict) else None

        error = record.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            return ParsedItem(
                key=key,
                error=ItemError(
                    kind="errored", message=message or "Request failed", provider_detail=error
                ),
                usage=usage or {},
            )

        parts = dig(response, "candidates", 0, "content", "parts") or []
        texts = [part["text"] for part in parts if isinstance(part, dict) and part.get("text")]
        if texts:
            content = "".join(texts)
        elif response:
            content = json.dumps(response)
        else:
            content = None
        return ParsedItem(key=key, content=content, usage=usage or {})
