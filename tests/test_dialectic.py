from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import bash, pattern_for, scenario_a
from engram.dialectic.confidence import pattern_score, score
from engram.dialectic.merge import distinguishing_conditions
from engram.dialectic.states import can_transition, check_transition
from engram.dialectic.summarizer import LLMSummarizer, render_statement, rule_title
from engram.exceptions import InsufficientEvidence, InvalidTransition
from engram.llm import ChatResponse
from engram.patterns.features import Observation, build_claim
from engram.types import Condition, Pattern, PatternClaim, PatternState, Relation

S = PatternState


def _pattern(state: PatternState, evidence: int = 3, counters: int = 0, resolved: int = 0,
             confidence: float = 0.0) -> Pattern:
    counter_ids = list(range(100, 100 + counters))
    return Pattern(
        id=1,
        state=state,
        claim=PatternClaim(action="git commit"),
        evidence_ids=list(range(evidence)),
        counter_ids=counter_ids,
        resolved_ids=counter_ids[:resolved],
        confidence=confidence,
    )


def test_transition_table():
    assert can_transition(S.CANDIDATE, S.THESIS)
    assert can_transition(S.PUBLISHED, S.SYNTHESIS)
    assert not can_transition(S.CANDIDATE, S.SYNTHESIS)
    assert not can_transition(S.ANTITHESIS, S.PUBLISHED)
    assert not any(can_transition(S.RETIRED, s) for s in S)
    assert all(can_transition(s, S.RETIRED) for s in S if s is not S.RETIRED)


def test_synthesis_and_publish_require_evidence():
    with pytest.raises(InvalidTransition):
        check_transition(_pattern(S.THESIS), S.PUBLISHED, min_evidence=3)
    with pytest.raises(InsufficientEvidence):
        check_transition(_pattern(S.ANTITHESIS, evidence=2), S.SYNTHESIS, min_evidence=3)
    # Resolved counter-examples count as support.
    check_transition(_pattern(S.ANTITHESIS, evidence=2, counters=1, resolved=1), S.SYNTHESIS, 3)
    with pytest.raises(InsufficientEvidence):
        check_transition(_pattern(S.SYNTHESIS, confidence=0.5), S.PUBLISHED, 3, min_confidence=0.7)
    check_transition(_pattern(S.SYNTHESIS, confidence=0.75), S.PUBLISHED, 3, min_confidence=0.7)


def test_confidence_is_pure_and_bounded():
    assert score(3, 0) == pytest.approx(0.75)
    assert score(4, 0) == pytest.approx(0.8)
    assert score(3, 1) == pytest.approx(0.6)
    assert score(0, 0, prior_smoothing=0.0) == 0.0
    assert score(10, 0, prior_smoothing=0.0) == 1.0
    assert score(3, 0, idle_sessions=10, session_decay=0.85) == pytest.approx(0.75 * 0.85 ** 10)
    p = _pattern(S.SYNTHESIS, evidence=3, counters=2, resolved=1)
    assert pattern_score(p) == pattern_score(p)
    assert pattern_score(p) == pytest.approx(4 / 6)


def test_distinguishing_conditions_prefers_present_keys():
    majority = [{"tool": "Bash", "command": "git"}] * 3
    exceptions = [{"tool": "Bash", "command": "git", "docs-only": "true"}]
    assert distinguishing_conditions(majority, exceptions) == [Condition(key="docs-only", value="true")]

    majority = [{"command": "git", "branch": "main"}] * 3
    exceptions = [{"command": "git"}]
    assert distinguishing_conditions(majority, exceptions) == [
        Condition(key="branch", value="main", negated=True)
    ]

    same = [{"tool": "Bash", "command": "git"}]
    assert distinguishing_conditions(same * 3, same) == []


def test_build_claim_uses_majority_neighbour():
    obs = [
        Observation(memory_id=i, action="git commit", preceded_by="bun test",
                    context={"tool": "Bash", "command": "git", "subcommand": "commit"})
        for i in range(3)
    ]
    obs.append(Observation(memory_id=9, action="git commit", context={"tool": "Bash"}))
    claim = build_claim(obs)
    assert claim.relation is Relation.PRECEDED_BY
    assert claim.related_action == "bun test"
    assert claim.context == {"tool": "Bash", "command": "git", "subcommand": "commit"}
    assert build_claim(obs) == claim


def test_statement_and_title_rendering():
    claim = PatternClaim(action="git commit", relation=Relation.PRECEDED_BY,
                         related_action="bun test", context={"tool": "Bash", "branch": "main"},
                         exceptions=[Condition(key="docs-only", value="true")])
    assert render_statement(claim) == (
        "`git commit` is preceded by `bun test` when branch=main; except when docs-only=true"
    )
    assert rule_title(claim) == "Run bun test before git commit"
    assert rule_title(PatternClaim(action="pytest", failed=True)) == "Watch for failing pytest"


class _Chat:
    def __init__(self, reply: str | None = None) -> None:
        self.reply = reply

    async def chat(self, messages, temperature=0.0, max_tokens=120, **kwargs):
        if self.reply is None:
            raise RuntimeError("provider down")
        return ChatResponse(content=self.reply, model="stub")

    async def close(self) -> None:
        return None


def test_llm_summarizer_falls_back_to_template():
    async def _run() -> None:
        claim = PatternClaim(action="git commit", relation=Relation.PRECEDED_BY,
                             related_action="bun test")
        assert await LLMSummarizer(_Chat()).summarize(claim, []) == (
            "`git commit` is preceded by `bun test`"
        )
        worded = await LLMSummarizer(_Chat("Run bun test before committing.\nextra")).summarize(claim, [])
        assert worded == "Run bun test before committing."

    asyncio.run(_run())


def test_indistinguishable_contradictions_mark_noise_then_hold(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory()
        scenario_a(eg, base_time)
        await eg.consolidate()
        eg.capture(bash("s1", "git commit -m wip", base_time + timedelta(seconds=2400)))
        report = await eg.consolidate()

        git = pattern_for(eg, "git commit")
        assert (git.id, "antithesis", "synthesis") in report.transitions
        assert git.state is S.SYNTHESIS
        assert git.claim.noise is True
        assert git.claim.exceptions == []
        assert len(git.open_counter_ids) == 1
        assert git.confidence == pytest.approx(0.6)

        # As many exceptions as supporting memories: no majority, stays contested.
        for offset in (3600, 4800):
            eg.capture(bash("s1", "git commit -m wip", base_time + timedelta(seconds=offset)))
        await eg.consolidate()
        git = pattern_for(eg, "git commit")
        assert git.state is S.ANTITHESIS
        assert git.contradiction_count == 3
        assert git.confidence == pytest.approx(3 / 7)

    asyncio.run(_run())
