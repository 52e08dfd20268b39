"""
Base backend abstraction.
All backends implement this interface so the registry can treat them uniformly:
submit ordered role/text turns, get back either a complete reply or an
incremental sequence of text fragments.
"""

from __future__ import annotations

import abc
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator

import httpx

from chatline.errors import ProviderError

logger = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    """The three ways a logical model id can be served."""
    OPENAI = "openai"          # direct vendor
    ANTHROPIC = "anthropic"    # direct vendor
    OPENROUTER = "openrouter"  # aggregator, passthrough model ids


@dataclass(frozen=True)
class ProviderDescriptor:
    """A resolved model: which backend to call and with which concrete name."""
    kind: ProviderKind
    model_name: str
    model_id: str = ""


@dataclass
class BackendResponse:
    """Standardized non-streaming response from any backend."""
    ok: bool
    status_code: int = 200
    text: str = ""
    data: dict = field(default_factory=dict)
    backend_name: str = ""
    latency_ms: float = 0.0
    cost_usd: float | None = None  # Only populated by the aggregator
    error: str = ""


def parse_sse_data(line: str) -> dict | None:
    """
    Decode one server-sent-events line.
    Returns the JSON payload of a data line, or None for anything else
    (event names, comments, keep-alives, the [DONE] sentinel).
    """
    if not line.startswith("data:"):
        return None
    data_str = line[5:].strip()
    if not data_str or data_str == "[DONE]":
        return None
    try:
        payload = json.loads(data_str)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON stream line: %s", line)
        return None
    return payload if isinstance(payload, dict) else None


class BaseBackend(abc.ABC):
    """
    Abstract base for provider backends.
    Subclasses describe their wire format; the HTTP plumbing lives here.
    """

    kind: ProviderKind
    endpoint: str = "/chat/completions"

    def __init__(
        self,
        name: str,
        url: str,
        api_key: str = "",
        timeout: float = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.name = name
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @abc.abstractmethod
    def _headers(self) -> dict:
        """Request headers, including auth."""
        ...

    @abc.abstractmethod
    def _build_body(self, turns: list[dict], model: str, system: str | None, stream: bool) -> dict:
        """Translate role/text turns into this provider's request body."""
        ...

    @abc.abstractmethod
    def _extract_text(self, data: dict) -> str:
        """Pull the reply text out of a non-streaming response body."""
        ...

    @abc.abstractmethod
    def _extract_delta(self, payload: dict) -> str:
        """
        Pull the text increment out of one stream event.
        Raises ProviderError if the event reports an upstream failure.
        """
        ...

    def _extract_cost(self, data: dict) -> float | None:
        return None

    def _require_key(self):
        if not self.api_key:
            raise ProviderError(f"No API key configured for {self.name}")

    async def complete(
        self,
        turns: list[dict],
        model: str,
        system: str | None = None,
    ) -> BackendResponse:
        """Non-streaming request. Never raises; failures come back as ok=False."""
        if not self.api_key:
            return BackendResponse(
                ok=False, backend_name=self.name,
                error=f"No API key configured for {self.name}",
            )

        t0 = time.monotonic()
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.url}{self.endpoint}",
                    headers=self._headers(),
                    json=self._build_body(turns, model, system, stream=False),
                )
                latency = (time.monotonic() - t0) * 1000

                if resp.status_code >= 400:
                    return BackendResponse(
                        ok=False,
                        status_code=resp.status_code,
                        backend_name=self.name,
                        latency_ms=latency,
                        error=f"HTTP {resp.status_code}: {resp.text[:200]}",
                    )

                data = resp.json()
                return BackendResponse(
                    ok=True,
                    status_code=resp.status_code,
                    text=self._extract_text(data),
                    data=data,
                    backend_name=self.name,
                    latency_ms=latency,
                    cost_usd=self._extract_cost(data),
                )
        except httpx.TimeoutException:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Backend '%s' timed out after %.0fms", self.name, latency)
            return BackendResponse(
                ok=False, backend_name=self.name, latency_ms=latency,
                error=f"Timeout after {self.timeout}s",
            )
        except (httpx.HTTPError, ValueError) as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Backend '%s' failed: %s", self.name, e)
            return BackendResponse(
                ok=False, backend_name=self.name, latency_ms=latency,
                error=str(e),
            )

    async def stream_text(
        self,
        turns: list[dict],
        model: str,
        system: str | None = None,
    ) -> AsyncIterator[str]:
        """
        Streaming request. Yields non-empty text increments in arrival order.
        Any failure, before or during the stream, raises ProviderError.
        """
        self._require_key()
        body = self._build_body(turns, model, system, stream=True)

        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.url}{self.endpoint}",
                    headers=self._headers(),
                    json=body,
                ) as resp:
                    if resp.status_code >= 400:
                        detail = (await resp.aread()).decode("utf-8", "replace")
                        raise ProviderError(
                            f"{self.name}: HTTP {resp.status_code}: {detail[:200]}"
                        )
                    async for line in resp.aiter_lines():
                        payload = parse_sse_data(line)
                        if payload is None:
                            continue
                        delta = self._extract_delta(payload)
                        if delta:
                            yield delta
        except httpx.TimeoutException as e:
            logger.warning("Backend '%s' stream timed out", self.name)
            raise ProviderError(f"{self.name}: timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' stream failed: %s", self.name, e)
            raise ProviderError(f"{self.name}: {e}") from e

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
