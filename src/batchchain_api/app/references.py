from __future__ import annotations

import logging
from collections.abc import Callable
from urllib import error, request

from .artifacts import ArtifactStore, split_public_url

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, float], bytes]


def http_fetch(url: str, timeout_s: float) -> bytes:
    """GET `url` and return the body; raise on non-2xx or transport errors."""
    req = request.Request(url=url, method="GET", headers={"Accept": "image/*"})
    try:
        with request.urlopen(req, timeout=timeout_s) as response:
            return response.read()
    except error.HTTPError as exc:
        raise RuntimeError(f"Failed to fetch image: HTTP {exc.code} {exc.reason}") from exc


class ReferenceLoader:
    """Collect reference images for one task, dropping any that fail to load."""

    def __init__(
        self,
        *,
        artifacts: ArtifactStore | None = None,
        fetcher: Fetcher = http_fetch,
        timeout_s: float = 30.0,
    ) -> None:
        self.artifacts = artifacts
        self.fetcher = fetcher
        self.timeout_s = timeout_s

    def load(self, urls: list[str], *, log_prefix: str = "") -> list[bytes]:
        images: list[bytes] = []
        for url in urls:
            try:
                data = self._load_one(url)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "%sreference_download event=skipped url=%s reason=%s",
                    log_prefix,
                    url[:80],
                    exc,
                )
                continue
            if not data:
                logger.warning("%sreference_download event=empty url=%s", log_prefix, url[:80])
                continue
            images.append(data)
        logger.info(
            "%sreference_download event=done loaded=%d requested=%d",
            log_prefix,
            len(images),
            len(urls),
        )
        return images

    def _load_one(self, url: str) -> bytes:
        if self.artifacts is not None:
            location = split_public_url(url, self.artifacts.base_url)
            if location is not None:
                bucket, path = location
                return self.artifacts.download(bucket, path)
        return self.fetcher(url, self.timeout_s)
