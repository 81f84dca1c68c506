"""Chat backend abstraction used to phrase pattern statements."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx


@dataclass
class Message:
    role: str
    content: str


@dataclass
class ChatResponse:
    content: str
    model: str = ""
    usage: dict[str, Any] = field(default_factory=dict)
    finish_reason: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ChatBackend(Protocol):
    async def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResponse: ...

    async def close(self) -> None: ...


class HTTPChatBackend:
    """Client lifecycle and usage accounting shared by the HTTP providers.

    Subclasses provide ``_request`` (path and JSON body) and ``_parse``.
    """

    require_key_env: str = ""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str = "",
        headers: dict[str, str] | None = None,
        timeout: float = 60.0,
        temperature: float = 0.0,
        max_tokens: int = 256,
    ) -> None:
        self.model = model
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._headers = headers or {}
        self._client: httpx.AsyncClient | None = None
        self._stats = {"calls": 0, "input_tokens": 0, "output_tokens": 0}

    async def _get_client(self) -> httpx.AsyncClient:
        if self.require_key_env and not self.api_key:
            raise RuntimeError(f"{self.require_key_env} is required")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, headers=self._headers, timeout=self.timeout
            )
        return self._client

    def _request(self, messages: list[Message], temperature: float,
                 max_tokens: int) -> tuple[str, dict[str, Any]]:
        raise NotImplementedError

    def _parse(self, data: dict[str, Any]) -> ChatResponse:
        raise NotImplementedError

    async def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResponse:
        client = await self._get_client()
        path, body = self._request(
            messages,
            self.temperature if temperature is None else temperature,
            self.max_tokens if max_tokens is None else max_tokens,
        )
        resp = await client.post(path, json=body)
        resp.raise_for_status()
        result = self._parse(resp.json())
        self._stats["calls"] += 1
        self._stats["input_tokens"] += int(result.usage.get("input_tokens", 0))
        self._stats["output_tokens"] += int(result.usage.get("output_tokens", 0))
        return result

    @property
    def stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "total_tokens": self._stats["input_tokens"] + self._stats["output_tokens"],
        }

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
