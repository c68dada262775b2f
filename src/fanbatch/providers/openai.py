from __future__ import annotations

import typing as t

from fanbatch.models import ItemError, JobError, ParsedItem
from fanbatch.providers.base import BaseProvider, PollSnapshot, ProviderRequestSpec, dig
from fanbatch.status import JobStatus

CHAT_COMPLETIONS_ENDPOINT = "/v1/chat/completions"


class OpenAIProvider(BaseProvider):
    """
    OpenAI Batch API adapter.

    OpenAI only accepts batches as uploaded JSONL files, so text prompts are
    written to a generated file before the batch is created.
    """

    name = "openai"
    display_name = "OpenAI"
    supports_inline = False
    supports_file_upload = True
    results_locator_field = "output_file_id"
    status_table = (
        ("completed", JobStatus.COMPLETED),
        ("failed", JobStatus.FAILED),
        ("expired", JobStatus.FAILED),
        ("cancelled", JobStatus.FAILED),
        ("in_progress", JobStatus.RUNNING),
        ("finalizing", JobStatus.RUNNING),
        ("validating", JobStatus.RUNNING),
        ("cancelling", JobStatus.RUNNING),
    )

    @property
    def api_key(self) -> str | None:
        return self.settings.openai_api_key

    def _auth_headers(self, *, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    def build_request_item(
        self,
        *,
        key: str,
        prompts: t.Sequence[str],
        temperature: float,
        system_prompt: str | None,
    ) -> dict[str, t.Any]:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend({"role": "user", "content": prompt} for prompt in prompts)
        return {
            "custom_id": key,
            "method": "POST",
            "url": CHAT_COMPLETIONS_ENDPOINT,
            "body": {
                "model": self.settings.openai_model,
                "messages": messages,
                "temperature": temperature,
            },
        }

    def build_upload_request(
        self,
        *,
        content: bytes,
        display_name: str,
        content_type: str,
    ) -> ProviderRequestSpec:
        return ProviderRequestSpec(
            method="POST",
            url=f"{self.settings.openai_base_url}/v1/files",
            headers=self.build_api_headers(),
            files={"file": (display_name, content, content_type)},
            data={"purpose": "batch"},
        )

    def build_file_create_request(
        self,
        *,
        file_handle: str,
        internal_job_id: str,
    ) -> ProviderRequestSpec:
        return ProviderRequestSpec(
            method="POST",
            url=f"{self.settings.openai_base_url}/v1/batches",
            headers=self.build_api_headers(),
            json_body={
                "input_file_id": file_handle,
                "endpoint": CHAT_COMPLETIONS_ENDPOINT,
                "completion_window": self.settings.openai_completion_window,
                "metadata": {"description": f"fanbatch {internal_job_id}"},
            },
        )

    def build_poll_request(self, *, provider_job_id: str) -> ProviderRequestSpec:
        return ProviderRequestSpec(
            method="GET",
            url=f"{self.settings.openai_base_url}/v1/batches/{provider_job_id}",
            headers=self.build_api_headers(),
        )

    def parse_poll_response(self, *, payload: dict[str, t.Any]) -> PollSnapshot:
        state = str(payload.get("status") or "")
        status = self.map_status(state)
        locator = payload.get("output_file_id") or payload.get("error_file_id") or ""
        error = None
        if status is JobStatus.FAILED:
            errors = dig(payload, "errors", "data") or []
            messages = [e["message"] for e in errors if isinstance(e, dict) and e.get("message")]
            message = f"OpenAI batch job {payload.get('id', '')} {state}"
            if messages:
                message = f"{message}: {'; '.join(messages)}"
            error = JobError(kind="provider", message=message, provider_detail=errors or None)
        summary = ""
        if status is JobStatus.COMPLETED:
            summary = self.completed_message(provider_job_id=str(payload.get("id", "")))
            counts = payload.get("request_counts") or {}
            if counts:
                summary = (
                    f"{summary} Completed : {counts.get('completed', 0)} "
                    f"Failed : {counts.get('failed', 0)}"
                )
        return PollSnapshot(
            status=status,
            provider_state=state,
            results_locator=str(locator),
            error=error,
            summary=summary,
            raw=payload,
        )

    def build_results_request(self, *, locator: str) -> ProviderRequestSpec:
        return ProviderRequestSpec(
            method="GET",
            url=f"{self.settings.openai_base_url}/v1/files/{locator}/content",
            headers=self.build_api_headers(),
        )

    def parse_result_item(self, record: dict[str, t.Any], *, position: int) -> ParsedItem:
        key = record.get("custom_id")
        response = record.get("response") or {}
        body = response.get("body")
        if not isinstance(body, dict):
            body = {}
        usage = body.get("usage") or {}

        error = record.get("error")
        status_code = int(response.get("status_code") or 200)
        if error or status_code >= 400:
            detail = error or body.get("error") or body
            message = dig(detail, "message") or f"Request failed with status {status_code}"
            return ParsedItem(
                key=key,
                error=ItemError(kind="errored", message=message, provider_detail=detail),
                usage=usage,
            )

        content = dig(body, "choices", 0, "message", "content")
        return ParsedItem(key=key, content=content, usage=usage)
