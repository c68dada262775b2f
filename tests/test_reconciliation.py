"""Tests for reconciling stored jobs with provider batch status."""

import typing as t

import pytest

from fanbatch.core import BatchJobManager
from fanbatch.exceptions import BatchValidationError
from fanbatch.job_store import JobStore
from fanbatch.models import FileUploadStatusView
from fanbatch.status import JobStatus, SubmissionMethod
from tests.mocks.batching import FakeBatchAPI


async def _submit(manager: BatchJobManager, *provider_ids: str) -> dict[str, str]:
    acks = await manager.submit_batch_job(
        method="text_input", prompts=["a", "b"], provider_ids=list(provider_ids)
    )
    return {provider_id: ack.internal_job_id for provider_id, ack in acks.items()}


@pytest.mark.asyncio
async def test_running_then_completed(make_manager: t.Callable[..., BatchJobManager]) -> None:
    manager = make_manager(FakeBatchAPI(pending_polls=1))
    job_ids = await _submit(manager, "openai")

    first = await manager.get_batch_job_status([job_ids["openai"]])
    second = await manager.get_batch_job_status([job_ids["openai"]])

    assert first[job_ids["openai"]].status == "RUNNING"
    assert first[job_ids["openai"]].result == "OpenAI job is still running, please check later."
    view = second[job_ids["openai"]]
    assert view.status == "COMPLETED"
    assert view.result.startswith("OpenAI batch job batch_")
    assert view.result.endswith("SUCCEEDED. Results are available. Completed : 2 Failed : 0")


@pytest.mark.asyncio
async def test_terminal_jobs_are_not_polled_again(
    manager: BatchJobManager, fake_api: FakeBatchAPI
) -> None:
    job_ids = await _submit(manager, "gemini")

    first = await manager.get_batch_job_status([job_ids["gemini"]])
    polls = fake_api.count(method="GET", path_fragment="/v1beta/batches/")
    second = await manager.get_batch_job_status([job_ids["gemini"]])

    assert polls == 1
    assert fake_api.count(method="GET", path_fragment="/v1beta/batches/") == 1
    assert first == second
    assert second[job_ids["gemini"]].status == "COMPLETED"


@pytest.mark.asyncio
async def test_unknown_job_id_is_not_found(manager: BatchJobManager) -> None:
    views = await manager.get_batch_job_status(["job-unknown"])

    assert views["job-unknown"].status == "NOT_FOUND"
    assert views["job-unknown"].message == "Job not found."


@pytest.mark.asyncio
async def test_empty_job_ids_raise(manager: BatchJobManager) -> None:
    with pytest.raises(BatchValidationError, match="No job IDs provided."):
        await manager.get_batch_job_status([])


@pytest.mark.asyncio
async def test_claude_ended_without_results_url_stays_running(
    make_manager: t.Callable[..., BatchJobManager], store: JobStore
) -> None:
    manager = make_manager(FakeBatchAPI(claude_polls_without_results_url=1))
    job_ids = await _submit(manager, "claude")
    job_id = job_ids["claude"]

    first = await manager.get_batch_job_status([job_id])

    assert first[job_id].status == "RUNNING"
    assert first[job_id].result == (
        "Claude reported ended without a results locator, please check later."
    )
    assert store.get(job_id).awaiting_results_locator is True

    second = await manager.get_batch_job_status([job_id])

    assert second[job_id].status == "COMPLETED"
    assert second[job_id].result == "Claude batch job msgbatch_1 status. Succeeded : 2"
    job = store.get(job_id)
    assert job.awaiting_results_locator is False
    assert job.results_locator.endswith("/v1/messages/batches/msgbatch_1/results")


@pytest.mark.asyncio
async def test_poll_failure_marks_only_that_job_failed(
    make_manager: t.Callable[..., BatchJobManager], store: JobStore
) -> None:
    manager = make_manager(FakeBatchAPI(fail_poll={"gemini"}))
    job_ids = await _submit(manager, "gemini", "openai")

    views = await manager.get_batch_job_status([job_ids["gemini"], job_ids["openai"]])

    failed = views[job_ids["gemini"]]
    assert failed.status == "FAILED"
    assert failed.result.startswith("Failed to check status: ")
    assert '"unavailable"' in failed.result
    assert store.get(job_ids["gemini"]).error.kind == "reconciliation"
    assert views[job_ids["openai"]].status == "COMPLETED"


@pytest.mark.asyncio
async def test_job_without_provider_job_id_is_returned_as_is(
    manager: BatchJobManager, store: JobStore, fake_api: FakeBatchAPI
) -> None:
    job = store.create(provider_id="gemini", submission_method=SubmissionMethod.TEXT_INPUT)

    views = await manager.get_batch_job_status([job.internal_job_id])

    assert views[job.internal_job_id].status == "PENDING"
    assert fake_api.requests == []


@pytest.mark.asyncio
async def test_failed_submission_is_reported_without_polling(
    make_manager: t.Callable[..., BatchJobManager],
) -> None:
    fake_api = FakeBatchAPI(fail_create={"openai"})
    manager = make_manager(fake_api)
    job_ids = await _submit(manager, "openai")

    views = await manager.get_batch_job_status([job_ids["openai"]])

    assert views[job_ids["openai"]].status == "FAILED"
    assert fake_api.count(method="GET", path_fragment="/v1/batches/") == 0


@pytest.mark.asyncio
async def test_duplicate_job_ids_are_polled_once(
    manager: BatchJobManager, fake_api: FakeBatchAPI
) -> None:
    job_ids = await _submit(manager, "claude")

    views = await manager.get_batch_job_status([job_ids["claude"], job_ids["claude"]])

    assert list(views) == [job_ids["claude"]]
    assert fake_api.count(method="GET", path_fragment="/v1/messages/batches/") == 1


@pytest.mark.asyncio
async def test_file_upload_status_by_provider_job_id(
    manager: BatchJobManager, store: JobStore
) -> None:
    acks = await manager.submit_batch_job(
        method="file_upload", prompts=["a"], provider_ids=["gemini"]
    )
    provider_job_id = acks["gemini"].provider_job_id

    view = await manager.get_batch_job_status(
        [provider_job_id], is_file_upload=True, provider_id="gemini"
    )

    assert isinstance(view, FileUploadStatusView)
    assert view.provider_job_id == provider_job_id
    assert view.status == "COMPLETED"
    assert view.results_locator.startswith("files/out-")
    assert store.get(acks["gemini"].internal_job_id).status is JobStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("provider_id", "message"),
    [
        (None, "A provider id is required"),
        ("claude", "Model claude not supported for file upload batch status check."),
    ],
)
async def test_file_upload_status_validation(
    manager: BatchJobManager, provider_id: str | None, message: str
) -> None:
    with pytest.raises(BatchValidationError, match=message):
        await manager.get_batch_job_status(
            ["msgbatch_1"], is_file_upload=True, provider_id=provider_id
        )


@pytest.mark.asyncio
async def test_gemini_operation_is_running_until_done(
    make_manager: t.Callable[..., BatchJobManager],
) -> None:
    manager = make_manager(
        FakeBatchAPI(pending_polls=1, gemini_unfinished_state="BATCH_STATE_SUCCEEDED")
    )
    job_ids = await _submit(manager, "gemini")

    first = await manager.get_batch_job_status([job_ids["gemini"]])
    second = await manager.get_batch_job_status([job_ids["gemini"]])
    results = await manager.get_batch_job_result([job_ids["gemini"]])

    assert first[job_ids["gemini"]].status == "RUNNING"
    assert second[job_ids["gemini"]].status == "COMPLETED"
    assert "Prompt: b\nResponse: echo: b" in results[job_ids["gemini"]].result


@pytest.mark.asyncio
async def test_file_upload_status_does_not_complete_an_unfinished_inline_job(
    make_manager: t.Callable[..., BatchJobManager], store: JobStore
) -> None:
    manager = make_manager(
        FakeBatchAPI(pending_polls=1, gemini_unfinished_state="BATCH_STATE_SUCCEEDED")
    )
    acks = await manager.submit_batch_job(
        method="text_input", prompts=["a"], provider_ids=["gemini"]
    )

    view = await manager.get_batch_job_status(
        [acks["gemini"].provider_job_id], is_file_upload=True, provider_id="gemini"
    )

    assert view.status == "COMPLETED"
    assert view.provider_state == "BATCH_STATE_SUCCEEDED"
    assert store.get(acks["gemini"].internal_job_id).status is JobStatus.RUNNING
