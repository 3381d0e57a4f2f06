from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from fakes import FakeProvider
from reconciler_api.app.settings import Settings
from reconciler_api.app.storage.memory import InMemoryTaskStorage
from reconciler_api.main import create_app


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="",
        poll_interval_s=0,
        poll_request_delay_s=0,
        poll_min_age_s=60,
        provider_query_timeout_s=2.0,
    )


@pytest.fixture
def storage() -> InMemoryTaskStorage:
    return InMemoryTaskStorage()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def client(
    storage: InMemoryTaskStorage,
    provider: FakeProvider,
    settings: Settings,
) -> Iterator[TestClient]:
    app = create_app(
        storage=storage,
        providers={provider.name: provider},
        settings_override=settings,
    )
    with TestClient(app) as test_client:
        yield test_client
