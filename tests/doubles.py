from __future__ import annotations

from datetime import UTC, datetime, timedelta

from batchchain_api.app.models import ImageSize
from batchchain_api.app.provider import ProviderError

FAKE_PNG = b"\x89PNG\r\n\x1a\nfake-image-bytes"
ARTIFACT_BASE_URL = "http://artifacts.test/storage"


class FakeProvider:
    """Test-only image provider that records every call."""

    def __init__(self, *, fail_on: set[str] | None = None, image: bytes = FAKE_PNG) -> None:
        self.fail_on = fail_on or set()
        self.image = image
        self.calls: list[tuple[str, str, int]] = []

    def generate(self, prompt: str, *, size: ImageSize) -> bytes:
        self.calls.append(("generate", prompt, 0))
        return self._respond(prompt)

    def edit(self, prompt: str, references: list[bytes], *, size: ImageSize) -> bytes:
        self.calls.append(("edit", prompt, len(references)))
        return self._respond(prompt)

    def _respond(self, prompt: str) -> bytes:
        if prompt in self.fail_on:
            raise ProviderError(f"provider rejected prompt: {prompt}")
        return self.image


class RecordingMirror:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.updates: list[dict[str, object]] = []

    def mirror(
        self,
        batch_id: str,
        batch_index: int,
        *,
        status: str,
        result_url: str | None = None,
        error_message: str | None = None,
    ) -> int:
        if self.fail:
            raise RuntimeError("mirror table unavailable")
        self.updates.append(
            {
                "batch_id": batch_id,
                "batch_index": batch_index,
                "status": status,
                "result_url": result_url,
                "error_message": error_message,
            }
        )
        return 1


class RecordingDispatcher:
    """Dispatcher double that only remembers what it was asked to run."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.dispatched: list[tuple[str, str | None, str]] = []

    def dispatch(self, task_id: str, *, owner_id: str | None = None, reason: str = "chain") -> None:
        if self.fail:
            raise RuntimeError("dispatch endpoint unreachable")
        self.dispatched.append((task_id, owner_id, reason))


class ManualClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)

