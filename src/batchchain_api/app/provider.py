from __future__ import annotations

import base64
import json
import logging
import os
import uuid
from typing import Any, Protocol
from urllib import error, request

from .models import ImageSize
from .settings import Settings

logger = logging.getLogger(__name__)

_SIZE_MAP: dict[str, str] = {
    "square": "1024x1024",
    "landscape": "1536x1024",
    "portrait": "1024x1536",
    "auto": "1024x1024",
}


class ProviderError(RuntimeError):
    """Generation request failed, timed out, or returned no artifact."""


class ImageProvider(Protocol):
    """Interface for the external generative-image service."""

    def generate(self, prompt: str, *, size: ImageSize) -> bytes: ...

    def edit(self, prompt: str, references: list[bytes], *, size: ImageSize) -> bytes: ...


def map_size(size: str | None) -> str:
    """Map a UI layout name to a provider size; unknown values fall back to square."""
    return _SIZE_MAP.get((size or "auto").lower(), _SIZE_MAP["square"])


class OpenAIImagesAdapter:
    """Small OpenAI adapter using the images REST API.

    No retries here: a failed generation fails the task, and re-running is the
    watchdog's decision, not the adapter's.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-image-1",
        base_url: str = "https://api.openai.com/v1",
        quality: str = "high",
        timeout_s: float = 300.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.quality = quality
        self.timeout_s = timeout_s

    def generate(self, prompt: str, *, size: ImageSize) -> bytes:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "quality": self.quality,
            "size": map_size(size),
        }
        body = json.dumps(payload).encode("utf-8")
        response_json = self._request(
            "/images/generations",
            body=body,
            content_type="application/json",
        )
        return self._extract_image(response_json)

    def edit(self, prompt: str, references: list[bytes], *, size: ImageSize) -> bytes:
        if not references:
            raise ProviderError("edit requires at least one reference image")
        fields = {
            "model": self.model,
            "prompt": prompt,
            "quality": self.quality,
            "size": map_size(size),
        }
        files = [
            ("image[]", f"reference_{index}.png", data) for index, data in enumerate(references)
        ]
        body, content_type = encode_multipart(fields, files)
        response_json = self._request("/images/edits", body=body, content_type=content_type)
        return self._extract_image(response_json)

    def _request(self, path: str, *, body: bytes, content_type: str) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        if _trace_enabled():
            logger.warning(
                "Provider trace request provider=openai model=%s url=%s timeout_s=%s",
                self.model,
                url,
                self.timeout_s,
            )
        req = request.Request(
            url=url,
            data=body,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": content_type,
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise ProviderError(
                f"OpenAI images request failed with HTTP {exc.code}: {raw_error}"
            ) from exc
        except (error.URLError, TimeoutError) as exc:
            raise ProviderError(f"OpenAI images request failed: {exc}") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProviderError("OpenAI images response was not valid JSON") from exc

    @staticmethod
    def _extract_image(response_json: dict[str, Any]) -> bytes:
        data = response_json.get("data") or []
        if not data or not isinstance(data[0], dict):
            raise ProviderError("OpenAI images response did not contain data")
        encoded = data[0].get("b64_json")
        if not isinstance(encoded, str) or not encoded:
            raise ProviderError("OpenAI images response did not contain an image")
        try:
            return base64.b64decode(encoded, validate=True)
        except ValueError as exc:
            raise ProviderError("OpenAI images response image was not valid base64") from exc


def encode_multipart(
    fields: dict[str, str],
    files: list[tuple[str, str, bytes]],
) -> tuple[bytes, str]:
    """Encode form fields and (name, filename, data) files as multipart/form-data."""
    boundary = f"----batchchain{uuid.uuid4().hex}"
    chunks: list[bytes] = []
    for name, value in fields.items():
        chunks.append(
            f'--{boundary}\r\nContent-Disposition: form-data; name="{name}"\r\n\r\n'
            f"{value}\r\n".encode()
        )
    for name, filename, data in files:
        chunks.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"; filename="{filename}"\r\n'
                "Content-Type: image/png\r\n\r\n"
            ).encode()
        )
        chunks.append(data)
        chunks.append(b"\r\n")
    chunks.append(f"--{boundary}--\r\n".encode())
    return b"".join(chunks), f"multipart/form-data; boundary={boundary}"


def build_provider_from_settings(settings: Settings) -> ImageProvider | None:
    api_key = settings.resolved_provider_api_key()
    if not api_key:
        return None
    return OpenAIImagesAdapter(
        api_key=api_key,
        model=settings.provider_model,
        base_url=settings.provider_base_url,
        quality=settings.provider_quality,
        timeout_s=settings.provider_timeout_s,
    )


def _trace_enabled() -> bool:
    return os.getenv("BATCHCHAIN_PROVIDER_TRACE", "0").strip() == "1"
