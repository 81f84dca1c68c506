"""Chat providers: OpenAI-compatible, Anthropic and Ollama."""

from __future__ import annotations

import os
from typing import Any

from engram.llm.backends import ChatResponse, HTTPChatBackend, Message


class OpenAIBackend(HTTPChatBackend):
    require_key_env = "OPENAI_API_KEY"

    def __init__(self, api_key: str | None = None, model: str = "gpt-4.1-mini",
                 base_url: str = "https://api.openai.com/v1", **kwargs: Any) -> None:
        key = api_key or os.environ.get("OPENAI_API_KEY", "")
        super().__init__(model, base_url, api_key=key,
                         headers={"Authorization": f"Bearer {key}"}, **kwargs)

    def _request(self, messages, temperature, max_tokens):
        return "/chat/completions", {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

    def _parse(self, data: dict[str, Any]) -> ChatResponse:
        choice = data["choices"][0]
        usage = data.get("usage", {})
        return ChatResponse(
            content=str(choice["message"]["content"]),
            model=str(data.get("model", self.model)),
            usage={
                "input_tokens": usage.get("prompt_tokens", 0),
                "output_tokens": usage.get("completion_tokens", 0),
            },
            finish_reason=str(choice.get("finish_reason", "")),
            raw=data,
        )


class AnthropicBackend(HTTPChatBackend):
    require_key_env = "ANTHROPIC_API_KEY"

    def __init__(self, api_key: str | None = None, model: str = "claude-3-5-haiku-latest",
                 base_url: str = "https://api.anthropic.com/v1", **kwargs: Any) -> None:
        key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")
        super().__init__(
            model, base_url, api_key=key,
            headers={"x-api-key": key, "anthropic-version": "2023-06-01"}, **kwargs,
        )

    def _request(self, messages, temperature, max_tokens):
        system = "\n".join(m.content for m in messages if m.role == "system")
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "assistant" if m.role == "assistant" else "user", "content": m.content}
                for m in messages if m.role != "system"
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if system:
            body["system"] = system
        return "/messages", body

    def _parse(self, data: dict[str, Any]) -> ChatResponse:
        text = "".join(
            str(blk.get("text", "")) for blk in data.get("content", [])
            if isinstance(blk, dict) and blk.get("type") == "text"
        )
        return ChatResponse(
            content=text,
            model=self.model,
            usage=data.get("usage", {}),
            finish_reason=str(data.get("stop_reason", "")),
            raw=data,
        )


class OllamaBackend(HTTPChatBackend):
    def __init__(self, model: str = "llama3.1:8b-instruct",
                 base_url: str = "http://127.0.0.1:11434", **kwargs: Any) -> None:
        super().__init__(model, base_url, **kwargs)

    def _request(self, messages: list[Message], temperature: float, max_tokens: int):
        return "/api/chat", {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }

    def _parse(self, data: dict[str, Any]) -> ChatResponse:
        return ChatResponse(
            content=str(data.get("message", {}).get("content", "")),
            model=self.model,
            usage={
                "input_tokens": data.get("prompt_eval_count", 0),
                "output_tokens": data.get("eval_count", 0),
            },
            finish_reason=str(data.get("done_reason", "")),
            raw=data,
        )
