from __future__ import annotations

from pathlib import Path

import pytest

from batchchain_api.app.artifacts import (
    ArtifactStorageError,
    BucketExistsError,
    LocalArtifactStore,
    artifact_path,
    ensure_bucket,
    split_public_url,
)
from batchchain_api.app.references import ReferenceLoader
from doubles import ARTIFACT_BASE_URL


def test_ensure_bucket_creates_once(artifacts: LocalArtifactStore) -> None:
    assert ensure_bucket(artifacts, "images") is True
    assert ensure_bucket(artifacts, "images") is False
    with pytest.raises(BucketExistsError):
        artifacts.create_bucket("images")


def test_upload_requires_bucket(artifacts: LocalArtifactStore) -> None:
    with pytest.raises(ArtifactStorageError, match="not found"):
        artifacts.upload("images", "u/generated/t.png", b"x", content_type="image/png")


def test_upload_overwrites_and_returns_public_url(artifacts: LocalArtifactStore, tmp_path: Path) -> None:
    artifacts.create_bucket("images")
    path = artifact_path("user-1", "task-1")

    artifacts.upload("images", path, b"first", content_type="image/png")
    url = artifacts.upload("images", path, b"second", content_type="image/png")

    assert path == "user-1/generated/task-1.png"
    assert url == f"{ARTIFACT_BASE_URL}/images/user-1/generated/task-1.png"
    assert artifacts.download("images", path) == b"second"
    leftovers = list((tmp_path / "artifacts" / "images" / "user-1" / "generated").glob("*.part"))
    assert leftovers == []


@pytest.mark.parametrize("path", ["../escape.png", "a/../../b.png", ""])
def test_object_paths_cannot_escape_bucket(artifacts: LocalArtifactStore, path: str) -> None:
    artifacts.create_bucket("images")
    with pytest.raises(ArtifactStorageError):
        artifacts.upload("images", path, b"x", content_type="image/png")


def test_split_public_url() -> None:
    assert split_public_url(f"{ARTIFACT_BASE_URL}/images/u/generated/t.png", ARTIFACT_BASE_URL) == (
        "images",
        "u/generated/t.png",
    )
    assert split_public_url(f"{ARTIFACT_BASE_URL}/images/u%20x/t.png", ARTIFACT_BASE_URL) == (
        "images",
        "u x/t.png",
    )
    assert split_public_url("https://cdn.test/images/u/t.png", ARTIFACT_BASE_URL) is None
    assert split_public_url(f"{ARTIFACT_BASE_URL}/images", ARTIFACT_BASE_URL) is None


def test_reference_loader_drops_empty_and_failed_downloads(artifacts: LocalArtifactStore) -> None:
    artifacts.create_bucket("images")
    hosted = artifacts.upload("images", "u/ref.png", b"hosted", content_type="image/png")
    missing = artifacts.public_url("images", "u/missing.png")

    def fetch(url: str, timeout_s: float) -> bytes:
        return b"" if url.endswith("empty.png") else b"remote"

    loader = ReferenceLoader(artifacts=artifacts, fetcher=fetch)

    images = loader.load([hosted, missing, "https://cdn.test/empty.png", "https://cdn.test/ok.png"])

    assert images == [b"hosted", b"remote"]
