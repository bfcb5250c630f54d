from __future__ import annotations

import base64
import io
import json
from typing import Any
from urllib import error

import pytest

from batchchain_api.app import provider as provider_module
from batchchain_api.app.provider import (
    OpenAIImagesAdapter,
    ProviderError,
    build_provider_from_settings,
    encode_multipart,
    map_size,
)
from batchchain_api.app.settings import Settings


class _FakeResponse:
    def __init__(self, payload: dict[str, Any]) -> None:
        self._raw = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> _FakeResponse:
        return self

    def __exit__(self, *_: object) -> None:
        return None

    def read(self) -> bytes:
        return self._raw


def _image_payload(data: bytes = b"png-bytes") -> dict[str, Any]:
    return {"data": [{"b64_json": base64.b64encode(data).decode("ascii")}]}


@pytest.mark.parametrize(
    ("size", "expected"),
    [
        ("square", "1024x1024"),
        ("landscape", "1536x1024"),
        ("portrait", "1024x1536"),
        ("auto", "1024x1024"),
        ("panorama", "1024x1024"),
        (None, "1024x1024"),
    ],
)
def test_map_size(size: str | None, expected: str) -> None:
    assert map_size(size) == expected


def test_generate_posts_json_and_decodes_image(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def fake_urlopen(req: Any, timeout: float) -> _FakeResponse:
        captured["url"] = req.full_url
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["auth"] = req.get_header("Authorization")
        captured["timeout"] = timeout
        return _FakeResponse(_image_payload(b"generated"))

    monkeypatch.setattr(provider_module.request, "urlopen", fake_urlopen)
    adapter = OpenAIImagesAdapter(api_key="sk-test", base_url="https://images.test/v1/", timeout_s=42)

    image = adapter.generate("a red bicycle", size="landscape")

    assert image == b"generated"
    assert captured["url"] == "https://images.test/v1/images/generations"
    assert captured["body"] == {
        "model": "gpt-image-1",
        "prompt": "a red bicycle",
        "quality": "high",
        "size": "1536x1024",
    }
    assert captured["auth"] == "Bearer sk-test"
    assert captured["timeout"] == 42


def test_edit_sends_references_as_multipart(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def fake_urlopen(req: Any, timeout: float) -> _FakeResponse:
        captured["url"] = req.full_url
        captured["content_type"] = req.get_header("Content-type")
        captured["body"] = req.data
        return _FakeResponse(_image_payload(b"edited"))

    monkeypatch.setattr(provider_module.request, "urlopen", fake_urlopen)
    adapter = OpenAIImagesAdapter(api_key="sk-test")

    image = adapter.edit("same pose", [b"ref-one", b"ref-two"], size="portrait")

    assert image == b"edited"
    assert captured["url"] == "https://api.openai.com/v1/images/edits"
    assert captured["content_type"].startswith("multipart/form-data; boundary=")
    body = captured["body"]
    assert body.count(b'name="image[]"') == 2
    assert b"ref-one" in body and b"ref-two" in body
    assert b"1024x1536" in body


def test_edit_without_references_is_rejected() -> None:
    with pytest.raises(ProviderError):
        OpenAIImagesAdapter(api_key="sk-test").edit("prompt", [], size="auto")


def test_http_error_becomes_provider_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_urlopen(req: Any, timeout: float) -> _FakeResponse:
        raise error.HTTPError(
            req.full_url,
            400,
            "Bad Request",
            hdrs=None,
            fp=io.BytesIO(b'{"error": {"message": "content policy"}}'),
        )

    monkeypatch.setattr(provider_module.request, "urlopen", failing_urlopen)

    with pytest.raises(ProviderError, match="HTTP 400.*content policy"):
        OpenAIImagesAdapter(api_key="sk-test").generate("prompt", size="auto")


def test_timeout_becomes_provider_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def slow_urlopen(req: Any, timeout: float) -> _FakeResponse:
        raise TimeoutError("The read operation timed out")

    monkeypatch.setattr(provider_module.request, "urlopen", slow_urlopen)

    with pytest.raises(ProviderError, match="timed out"):
        OpenAIImagesAdapter(api_key="sk-test").generate("prompt", size="auto")


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"data": []},
        {"data": [{"url": "https://images.test/1.png"}]},
        {"data": [{"b64_json": "***not base64***"}]},
    ],
)
def test_responses_without_an_image_are_errors(payload: dict[str, Any]) -> None:
    with pytest.raises(ProviderError):
        OpenAIImagesAdapter._extract_image(payload)


def test_encode_multipart_layout() -> None:
    body, content_type = encode_multipart({"prompt": "hi"}, [("image[]", "a.png", b"\x00\x01")])
    boundary = content_type.split("boundary=", 1)[1]

    assert body.startswith(f"--{boundary}\r\n".encode())
    assert body.endswith(f"--{boundary}--\r\n".encode())
    assert b'Content-Disposition: form-data; name="prompt"\r\n\r\nhi\r\n' in body
    assert b'filename="a.png"\r\nContent-Type: image/png\r\n\r\n\x00\x01\r\n' in body


def test_provider_requires_an_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert build_provider_from_settings(Settings(_env_file=None, provider_api_key="")) is None

    monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
    adapter = build_provider_from_settings(
        Settings(_env_file=None, provider_api_key="", provider_model="gpt-image-1-mini")
    )
    assert isinstance(adapter, OpenAIImagesAdapter)
    assert adapter.api_key == "sk-from-env"
    assert adapter.model == "gpt-image-1-mini"
