"""
End-to-end tests for ``BatchJobManager``: submit, reconcile, fetch results.
"""

import typing as t

import httpx
import pytest

from fanbatch import BatchJobManager, JobStore, ProviderSettings
from fanbatch.status import JobStatus
from fanbatch.transport import HttpFileTransport
from tests.mocks.batching import FakeBatchAPI, make_batch_transport


@pytest.mark.asyncio
async def test_text_input_batch_lifecycle(manager: BatchJobManager) -> None:
    """
    Submit three prompts to Gemini, reconcile and fetch the rendered results.

    Returns
    -------
    None
        This test asserts the full job lifecycle.
    """
    acks = await manager.submit_batch_job(
        method="text_input",
        prompts=["a", "b", "c"],
        provider_ids=["gemini"],
        is_single_batch_chat=False,
    )

    assert list(acks) == ["gemini"]
    job_id = acks["gemini"].internal_job_id
    assert acks["gemini"].provider_job_id
    assert acks["gemini"].status is JobStatus.PENDING

    statuses = await manager.get_batch_job_status([job_id])
    assert statuses[job_id].status == "COMPLETED"
    assert statuses[job_id].result.endswith("SUCCEEDED. Results are available.")

    results = await manager.get_batch_job_result([job_id])
    rendered = results[job_id].result
    positions = [
        rendered.index(f"--- Request Key: request-{n} ---\nPrompt: {prompt}")
        for n, prompt in enumerate(["a", "b", "c"], start=1)
    ]
    assert positions == sorted(positions)
    assert results[job_id].usage_data["totalTokenCount"] == 24


@pytest.mark.asyncio
async def test_partial_failure_keeps_one_entry_per_provider(
    make_manager: t.Callable[..., BatchJobManager],
) -> None:
    """
    Ensure a failing create call leaves the sibling submission intact.

    Returns
    -------
    None
        This test asserts the submission map.
    """
    manager = make_manager(FakeBatchAPI(fail_create={"openai"}))

    acks = await manager.submit_batch_job(
        method="text_input", prompts=["a"], provider_ids=["claude", "openai"]
    )

    assert set(acks) == {"claude", "openai"}
    assert acks["claude"].status is JobStatus.PENDING
    assert acks["openai"].status is JobStatus.FAILED
    assert acks["openai"].message

    statuses = await manager.get_batch_job_status(
        [acks["claude"].internal_job_id, acks["openai"].internal_job_id]
    )
    assert statuses[acks["claude"].internal_job_id].status == "COMPLETED"
    assert statuses[acks["openai"].internal_job_id].status == "FAILED"
    assert statuses[acks["openai"].internal_job_id].result


@pytest.mark.asyncio
async def test_unknown_job_id_resolves_alongside_known_ones(manager: BatchJobManager) -> None:
    acks = await manager.submit_batch_job(
        method="text_input", prompts=["a"], provider_ids=["openai"]
    )
    job_id = acks["openai"].internal_job_id

    statuses = await manager.get_batch_job_status(["job-missing", job_id])

    assert statuses["job-missing"].status == "NOT_FOUND"
    assert statuses[job_id].status == "COMPLETED"


@pytest.mark.asyncio
async def test_single_conversation_lifecycle(
    manager: BatchJobManager, fake_api: FakeBatchAPI
) -> None:
    acks = await manager.submit_batch_job(
        method="text_input",
        prompts=["x", "y"],
        provider_ids=["claude"],
        is_single_batch_chat=True,
    )
    job_id = acks["claude"].internal_job_id
    await manager.get_batch_job_status([job_id])

    results = await manager.get_batch_job_result([job_id])

    assert results[job_id].result == (
        "--- Request Key: request-1 ---\nPrompt: x__y\nResponse: echo: x | y"
    )
    assert results[job_id].result.count("Prompt:") == 1


@pytest.mark.asyncio
async def test_result_time_flag_overrides_stored_flag(manager: BatchJobManager) -> None:
    acks = await manager.submit_batch_job(
        method="text_input", prompts=["x", "y"], provider_ids=["gemini"]
    )
    job_id = acks["gemini"].internal_job_id
    await manager.get_batch_job_status([job_id])

    results = await manager.get_batch_job_result([job_id], is_single_batch_chat=True)

    assert results[job_id].result.count("Prompt: x__y") == 2


@pytest.mark.asyncio
async def test_terminal_status_is_idempotent(
    manager: BatchJobManager, fake_api: FakeBatchAPI
) -> None:
    acks = await manager.submit_batch_job(
        method="text_input", prompts=["a", "b"], provider_ids=["gemini", "claude", "openai"]
    )
    job_ids = [ack.internal_job_id for ack in acks.values()]

    first = await manager.get_batch_job_status(job_ids)
    requests_after_first = len(fake_api.requests)
    second = await manager.get_batch_job_status(job_ids)

    assert {view.status for view in first.values()} == {"COMPLETED"}
    assert second == first
    assert len(fake_api.requests) == requests_after_first


@pytest.mark.asyncio
async def test_prepared_file_lifecycle(
    manager: BatchJobManager, tmp_path
) -> None:
    batch_file = tmp_path / "prepared.jsonl"
    batch_file.write_text(
        '{"key": "request-1", "request": {"contents": [{"role": "user", "parts": '
        '[{"text": "hello"}]}]}}\n',
        encoding="utf-8",
    )

    ack = await manager.submit_batch_file(local_path=batch_file, provider_id="gemini")
    status = await manager.get_batch_job_status(
        [ack.provider_job_id], is_file_upload=True, provider_id="gemini"
    )
    results = await manager.get_batch_job_result(
        [ack.provider_job_id], is_file_upload=True, provider_id="gemini"
    )

    assert ack.status is JobStatus.PENDING
    assert status.status == "COMPLETED"
    assert results.results[0]["key"] == "request-1"
    assert results.results[0]["response"]["candidates"][0]["content"]["parts"][0]["text"] == (
        "echo: hello"
    )
    assert results.usage_data["promptTokenCount"] == 3


@pytest.mark.asyncio
async def test_views_serialize_to_json(manager: BatchJobManager) -> None:
    acks = await manager.submit_batch_job(
        method="text_input", prompts=["a"], provider_ids=["gemini"]
    )
    job_id = acks["gemini"].internal_job_id
    await manager.get_batch_job_status([job_id])

    results = await manager.get_batch_job_result([job_id])
    payload = results[job_id].model_dump(mode="json")

    assert payload["status"] == "COMPLETED"
    assert isinstance(payload["last_checked_at"], str)
    assert payload["usage_data"]["promptTokenCount"] == 3
    assert acks["gemini"].model_dump(mode="json")["status"] == "PENDING"


def test_manager_defaults(settings: ProviderSettings) -> None:
    manager = BatchJobManager(settings=settings)

    assert isinstance(manager.store, JobStore)
    assert set(manager.providers) == {"gemini", "claude", "openai"}
    assert isinstance(manager._transport_factory(manager.providers["openai"]), HttpFileTransport)


@pytest.mark.asyncio
async def test_manager_uses_injected_client_factory(settings: ProviderSettings) -> None:
    fake_api = FakeBatchAPI()
    transport = make_batch_transport(fake_api)
    manager = BatchJobManager(
        settings=settings,
        client_factory=lambda: httpx.AsyncClient(transport=transport),
    )

    acks = await manager.submit_batch_job(
        method="text_input", prompts=["a"], provider_ids=["claude"]
    )

    assert acks["claude"].status is JobStatus.PENDING
    assert fake_api.count(method="POST", path_fragment="/v1/messages/batches") == 1
