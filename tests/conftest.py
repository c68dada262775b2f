import typing as t

import httpx
import pytest

from fanbatch.config import ProviderSettings
from fanbatch.core import BatchJobManager
from fanbatch.job_store import JobStore
from fanbatch.providers import BaseProvider, build_providers
from tests.mocks.batching import FakeBatchAPI


@pytest.fixture(autouse=True)
def test_set_env(monkeypatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "test-key")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    for name in (
        "GEMINI_API_KEY",
        "GOOGLE_GEMINI_MODEL",
        "ANTHROPIC_MODEL",
        "ANTHROPIC_MAX_TOKENS",
        "OPENAI_MODEL",
        "FANBATCH_HTTP_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings() -> ProviderSettings:
    return ProviderSettings.from_env(use_dotenv=False)


@pytest.fixture
def providers(settings: ProviderSettings) -> dict[str, BaseProvider]:
    return build_providers(settings)


@pytest.fixture
def store() -> JobStore:
    return JobStore()


@pytest.fixture
def fake_api() -> FakeBatchAPI:
    return FakeBatchAPI()


@pytest.fixture
def make_manager(
    settings: ProviderSettings, store: JobStore
) -> t.Callable[..., BatchJobManager]:
    """
    Build managers wired to a fake provider API.

    Returns
    -------
    typing.Callable[..., BatchJobManager]
        Factory taking the ``FakeBatchAPI`` (or any handler) to route calls into.
    """

    def factory(
        api: t.Callable[[httpx.Request], t.Any],
        *,
        manager_settings: ProviderSettings | None = None,
    ) -> BatchJobManager:
        transport = httpx.MockTransport(api)
        return BatchJobManager(
            settings=manager_settings or settings,
            store=store,
            client_factory=lambda: httpx.AsyncClient(transport=transport),
        )

    return factory


@pytest.fixture
def manager(
    make_manager: t.Callable[..., BatchJobManager], fake_api: FakeBatchAPI
) -> BatchJobManager:
    return make_manager(fake_api)
