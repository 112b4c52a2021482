"""
Client for the external cloud transcoding provider.

The control plane only needs four commands from the provider: start a channel
from a playlist, stop it, read its status, and switch on an output
transmission. Everything about encoding and delivery stays on the provider.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from onair.config import (
    PROVIDER_API_KEY,
    PROVIDER_BASE_URL,
    PROVIDER_CONNECT_TIMEOUT_SEC,
    PROVIDER_MAX_RETRIES,
    PROVIDER_READ_TIMEOUT_SEC,
    PROVIDER_STREAM_BASE_URL,
)

logger = logging.getLogger(__name__)

TRANSMIT_PROTOCOLS = {"hls", "udp", "rtmp", "http"}


class ProviderError(Exception):
    """Raised when the provider rejects a command or cannot be reached in time."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass
class ProviderStream:
    hls_url: str
    iframe_url: str
    external_job_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def default_output_path(channel_id: str) -> str:
    return f"streams/{channel_id}"


def default_hls_url(channel_id: str, stream_base: str = PROVIDER_STREAM_BASE_URL) -> str:
    return f"{stream_base}/streams/{channel_id}/master.m3u8"


def default_iframe_url(channel_id: str, stream_base: str = PROVIDER_STREAM_BASE_URL) -> str:
    return f"{stream_base}/embed/channel/{channel_id}"


class TranscodingProvider(ABC):
    @abstractmethod
    def start(self, channel_id: str, playlist: list[dict[str, Any]], output_path: str) -> ProviderStream:
        ...

    @abstractmethod
    def stop(self, channel_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    def status(self, channel_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    def transmit(self, channel_id: str, protocol: str, target: str) -> ProviderStream:
        ...


class HttpTranscodingProvider(TranscodingProvider):
    """requests-based client with retries on idempotent calls and hard timeouts."""

    def __init__(
        self,
        base_url: str = PROVIDER_BASE_URL,
        api_key: str = PROVIDER_API_KEY,
        stream_base_url: str = PROVIDER_STREAM_BASE_URL,
        connect_timeout: float = PROVIDER_CONNECT_TIMEOUT_SEC,
        read_timeout: float = PROVIDER_READ_TIMEOUT_SEC,
        max_retries: int = PROVIDER_MAX_RETRIES,
    ):
        self.base_url = base_url.strip().rstrip("/")
        self.api_key = api_key.strip()
        self.stream_base_url = stream_base_url.strip().rstrip("/")
        self.timeout = (connect_timeout, read_timeout)
        self.session = self._create_session(max_retries)

    def _create_session(self, max_retries: int) -> requests.Session:
        session = requests.Session()

        # urllib3 only retries idempotent methods by default, so POST commands go out once.
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=0.5,
            status_forcelist=[429, 500, 502, 503, 504],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})
        if self.api_key:
            session.headers["Authorization"] = f"Bearer {self.api_key}"
        return session

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.Timeout as exc:
            raise ProviderError(f"Transcoding provider timed out on {method} {path}") from exc
        except requests.RequestException as exc:
            raise ProviderError(f"Transcoding provider unreachable: {exc}") from exc

        if not response.ok:
            detail = (response.text or "").strip() or response.reason or f"HTTP {response.status_code}"
            logger.warning("provider %s %s failed status=%s detail=%s", method, path, response.status_code, detail)
            raise ProviderError(detail, status_code=response.status_code)

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(f"Transcoding provider returned invalid JSON for {method} {path}") from exc
        return body if isinstance(body, dict) else {"data": body}

    def _stream_from(self, channel_id: str, body: dict[str, Any]) -> ProviderStream:
        job_id = body.get("id") or body.get("jobId")
        return ProviderStream(
            hls_url=body.get("hlsUrl") or default_hls_url(channel_id, self.stream_base_url),
            iframe_url=body.get("iframeUrl") or default_iframe_url(channel_id, self.stream_base_url),
            external_job_id=str(job_id) if job_id is not None else None,
            raw=body,
        )

    def start(self, channel_id: str, playlist: list[dict[str, Any]], output_path: str) -> ProviderStream:
        body = self._request(
            "POST",
            "/start",
            {"channelId": channel_id, "playlist": playlist, "outputPath": output_path},
        )
        return self._stream_from(channel_id, body)

    def stop(self, channel_id: str) -> dict[str, Any]:
        return self._request("POST", f"/stop/{channel_id}")

    def status(self, channel_id: str) -> dict[str, Any]:
        return self._request("GET", f"/status/{channel_id}")

    def transmit(self, channel_id: str, protocol: str, target: str) -> ProviderStream:
        body = self._request(
            "POST",
            "/transmit",
            {"channelId": channel_id, "protocol": protocol, "target": target},
        )
        return self._stream_from(channel_id, body)


_provider: TranscodingProvider | None = None


def get_provider() -> TranscodingProvider:
    global _provider
    if _provider is None:
        _provider = HttpTranscodingProvider()
    return _provider
