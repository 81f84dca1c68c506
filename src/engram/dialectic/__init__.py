"""Dialectic reasoning over patterns."""

from engram.dialectic.confidence import pattern_score, score
from engram.dialectic.engine import DialecticEngine, Evaluation
from engram.dialectic.merge import distinguishing_conditions
from engram.dialectic.states import TRANSITIONS, can_transition, check_transition
from engram.dialectic.summarizer import (
    LLMSummarizer,
    Summarizer,
    TemplateSummarizer,
    create_summarizer,
    render_statement,
)

__all__ = [
    "DialecticEngine",
    "Evaluation",
    "LLMSummarizer",
    "Summarizer",
    "TRANSITIONS",
    "TemplateSummarizer",
    "can_transition",
    "check_transition",
    "create_summarizer",
    "distinguishing_conditions",
    "pattern_score",
    "render_statement",
    "score",
]
