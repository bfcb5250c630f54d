from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from batchchain_api.app.artifacts import LocalArtifactStore
from batchchain_api.app.dispatch import InlineDispatcher
from batchchain_api.app.pipeline import Pipeline, build_pipeline
from batchchain_api.app.settings import Settings
from batchchain_api.app.storage import InMemoryTaskStore
from doubles import ARTIFACT_BASE_URL, FakeProvider, ManualClock, RecordingMirror


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        database_url="",
        dispatch_mode="inline",
        store_max_retries=1,
        store_backoff_s=0.0,
        artifact_root=tmp_path / "artifacts",
        artifact_base_url=ARTIFACT_BASE_URL,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store(clock: ManualClock) -> InMemoryTaskStore:
    return InMemoryTaskStore(clock=clock)


@pytest.fixture
def artifacts(tmp_path: Path) -> LocalArtifactStore:
    return LocalArtifactStore(tmp_path / "artifacts", base_url=ARTIFACT_BASE_URL)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def mirror() -> RecordingMirror:
    return RecordingMirror()


@pytest.fixture
def pipeline(
    settings: Settings,
    store: InMemoryTaskStore,
    provider: FakeProvider,
    artifacts: LocalArtifactStore,
    mirror: RecordingMirror,
) -> Pipeline:
    return build_pipeline(
        settings,
        store=store,
        provider=provider,
        artifacts=artifacts,
        mirror=mirror,
        dispatcher=InlineDispatcher(),
    )


@pytest.fixture
def client(
    settings: Settings,
    store: InMemoryTaskStore,
    provider: FakeProvider,
    artifacts: LocalArtifactStore,
    mirror: RecordingMirror,
) -> Iterator[TestClient]:
    from batchchain_api.main import create_app

    app = create_app(
        store=store,
        provider=provider,
        artifacts=artifacts,
        mirror=mirror,
        dispatcher=InlineDispatcher(),
        settings_override=settings,
    )
    with TestClient(app) as test_client:
        yield test_client
