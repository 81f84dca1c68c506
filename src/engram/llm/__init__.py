"""LLM client interfaces and provider implementations."""

from engram.llm.backends import ChatBackend, ChatResponse, HTTPChatBackend, Message
from engram.llm.providers import AnthropicBackend, OllamaBackend, OpenAIBackend


def create_chat_backend(provider: str = "openai", **kwargs) -> ChatBackend:
    p = (provider or "openai").strip().lower()
    if p == "openai":
        return OpenAIBackend(**kwargs)
    if p == "anthropic":
        return AnthropicBackend(**kwargs)
    if p in {"ollama", "local"}:
        return OllamaBackend(**kwargs)
    raise ValueError(f"Unsupported provider: {provider}")


__all__ = [
    "ChatBackend",
    "ChatResponse",
    "HTTPChatBackend",
    "Message",
    "OpenAIBackend",
    "AnthropicBackend",
    "OllamaBackend",
    "create_chat_backend",
]
