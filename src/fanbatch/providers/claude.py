from __future__ import annotations

import typing as t

from fanbatch.models import ItemError, ParsedItem
from fanbatch.providers.base import (
    BaseProvider,
    PollSnapshot,
    ProviderRequestSpec,
    dig,
    summarize_counts,
)
from fanbatch.status import JobStatus


class ClaudeProvider(BaseProvider):
    """
    Anthropic Message Batches adapter.

    Batches are created inline, report ``processing_status`` and expose a
    ``results_url`` JSONL document once processing has ended.
    """

    name = "claude"
    display_name = "Claude"
    supports_inline = True
    supports_file_upload = False
    results_locator_field = "results_url"
    status_table = (
        ("ended", JobStatus.COMPLETED),
        ("in_progress", JobStatus.RUNNING),
        ("canceling", JobStatus.RUNNING),
    )

    @property
    def api_key(self) -> str | None:
        return self.settings.anthropic_api_key

    def _auth_headers(self, *, api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": self.settings.anthropic_version,
        }

    def build_request_item(
        self,
        *,
        key: str,
        prompts: t.Sequence[str],
        temperature: float,
        system_prompt: str | None,
    ) -> dict[str, t.Any]:
        params: dict[str, t.Any] = {
            "model": self.settings.anthropic_model,
            "max_tokens": self.settings.anthropic_max_tokens,
            # Anthropic samples over 0..1
            "temperature": temperature / 2,
            "messages": [{"role": "user", "content": prompt} for prompt in prompts],
        }
        if system_prompt:
            params["system"] = system_prompt
        return {"custom_id": key, "params": params}

    def build_inline_create_request(
        self,
        *,
        items: t.Sequence[dict[str, t.Any]],
        internal_job_id: str,
    ) -> ProviderRequestSpec:
        return ProviderRequestSpec(
            method="POST",
            url=f"{self.settings.anthropic_base_url}/v1/messages/batches",
            headers=self.build_api_headers(),
            json_body={"requests": list(items)},
        )

    def build_poll_request(self, *, provider_job_id: str) -> ProviderRequestSpec:
        return ProviderRequestSpec(
            method="GET",
            url=f"{self.settings.anthropic_base_url}/v1/messages/batches/{provider_job_id}",
            headers=self.build_api_headers(),
        )

    def parse_poll_response(self, *, payload: dict[str, t.Any]) -> PollSnapshot:
        state = str(payload.get("processing_status") or "")
        status = self.map_status(state)
        summary = ""
        if status is JobStatus.COMPLETED:
            counts = summarize_counts(payload.get("request_counts"))
            summary = f"Claude batch job {payload.get('id', '')} status. {counts}".rstrip()
        return PollSnapshot(
            status=status,
            provider_state=state,
            results_locator=str(payload.get("results_url") or ""),
            summary=summary,
            raw=payload,
        )

    def build_results_request(self, *, locator: str) -> ProviderRequestSpec:
        return ProviderRequestSpec(method="GET", url=locator, headers=self.build_api_headers())

    def parse_result_item(self, record: dict[str, t.Any], *, position: int) -> ParsedItem:
        key = record.get("custom_id")
        result = record.get("result") or {}
        result_type = result.get("type")
        usage = dig(result, "message", "usage") or {}

        if result_type == "succeeded":
            blocks = dig(result, "message", "content") or []
            texts = [
                block["text"]
                for block in blocks
                if isinstance(block, dict)
                and block.get("type", "text") == "text"
                and "text" in block
            ]
            return ParsedItem(key=key, content="".join(texts) if texts else None, usage=usage)

        if result_type == "errored":
            detail = record.get("error") or result.get("error")
            message = dig(detail, "error", "message") or dig(detail, "message") or "Request errored"
            error = ItemError(kind="errored", message=message, provider_detail=detail)
        elif result_type == "expired":
            error = ItemError(kind="expired", message="Request expired before it was processed")
        elif result_type == "canceled":
            error = ItemError(kind="canceled", message="Request was canceled")
        else:
            error = ItemError(
                kind="errored",
                message=f"Unknown result type {result_type!r}",
                provider_detail=result or None,
            )
        return ParsedItem(key=key, error=error, usage=usage)
