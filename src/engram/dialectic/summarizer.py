"""Statement phrasing for pattern claims.

The template summarizer is deterministic and is the default. The LLM
summarizer only rewords; any failure falls back to the template.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import structlog

from engram.config import SummarizerConfig
from engram.llm import ChatBackend, Message, create_chat_backend
from engram.types import Memory, PatternClaim, Relation

logger = structlog.get_logger(__name__)

_RELATION_WORDS = {
    Relation.PRECEDED_BY: "is preceded by",
    Relation.FOLLOWED_BY: "is followed by",
}

# Keys already spelled out by the action label.
_IMPLIED_KEYS = {"tool", "command", "subcommand", "file_extension", "domain"}


@runtime_checkable
class Summarizer(Protocol):
    async def summarize(self, claim: PatternClaim, evidence: list[Memory]) -> str: ...


def base_statement(claim: PatternClaim) -> str:
    if claim.relation is not Relation.NONE and claim.related_action:
        text = f"`{claim.action}` {_RELATION_WORDS[claim.relation]} `{claim.related_action}`"
    elif claim.failed:
        text = f"`{claim.action}` tends to fail"
    else:
        text = f"`{claim.action}` recurs"
    conditions = [f"{k}={v}" for k, v in sorted(claim.context.items()) if k not in _IMPLIED_KEYS]
    if conditions:
        text += " when " + ", ".join(conditions)
    return text


def render_statement(claim: PatternClaim) -> str:
    text = base_statement(claim)
    if claim.exceptions:
        text += "; except when " + " or ".join(c.render() for c in claim.exceptions)
    return text


def rule_title(claim: PatternClaim) -> str:
    if claim.relation is Relation.PRECEDED_BY and claim.related_action:
        return f"Run {claim.related_action} before {claim.action}"
    if claim.relation is Relation.FOLLOWED_BY and claim.related_action:
        return f"Follow {claim.action} with {claim.related_action}"
    if claim.failed:
        return f"Watch for failing {claim.action}"
    return f"Recurring {claim.action}"


class TemplateSummarizer:
    async def summarize(self, claim: PatternClaim, evidence: list[Memory]) -> str:
        return render_statement(claim)


class LLMSummarizer:
    """Asks a chat model to reword the template statement in one sentence."""

    SYSTEM = (
        "You rewrite observed developer workflow regularities as one short imperative "
        "sentence. Keep every condition and exception. Reply with the sentence only."
    )

    def __init__(self, chat: ChatBackend, temperature: float = 0.0, max_tokens: int = 120) -> None:
        self._chat = chat
        self._fallback = TemplateSummarizer()
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def summarize(self, claim: PatternClaim, evidence: list[Memory]) -> str:
        template = await self._fallback.summarize(claim, evidence)
        examples = "\n".join(m.content.splitlines()[1] if "\n" in m.content else m.content
                             for m in evidence[:3])
        prompt = f"Regularity: {template}\nExamples:\n{examples}"
        try:
            resp = await self._chat.chat(
                [Message(role="system", content=self.SYSTEM), Message(role="user", content=prompt)],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except Exception as exc:
            logger.warning("summarizer_fallback", error=str(exc))
            return template
        text = resp.content.strip().splitlines()[0].strip() if resp.content.strip() else ""
        return text or template

    async def close(self) -> None:
        await self._chat.close()


def create_summarizer(config: SummarizerConfig | None = None) -> Summarizer:
    cfg = config or SummarizerConfig()
    provider = (cfg.provider or "template").strip().lower()
    if provider in {"template", "none", ""}:
        return TemplateSummarizer()
    kwargs = {"model": cfg.model} if cfg.model else {}
    chat = create_chat_backend(provider, **kwargs)
    return LLMSummarizer(chat, temperature=cfg.temperature, max_tokens=cfg.max_tokens)
