"""
Eval Engine - layered L1 -> L2 -> L3 evaluation of generated content.

Decides ``auto_send | needs_review | blocked`` before content is allowed to
take an externally visible action. Evaluation is progressive: L1 failure
short-circuits, L2 always runs after a passing L1, and the L3 judge is only
consulted when something raises doubt.

Usage::

    engine = EvalEngine(EvalConfig(), llm=provider)
    result = await engine.evaluate(
        text,
        EvalRules(assertions=[Assertion(check="no_placeholders")], criteria=["professional"]),
        action="send_email",
    )
    if result.decision == EvalDecision.AUTO_SEND:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from flowengine.config import EvalConfig
from flowengine.eval.assertions import Assertion, AssertionCatalog, L1Result
from flowengine.eval.judge import L3Result, SafetyJudge
from flowengine.eval.scoring import CriterionScorer, L2Result
from flowengine.llm.provider import LLMProvider

logger = logging.getLogger(__name__)

IRREVERSIBLE_ACTIONS = (
    "send_email",
    "send_message",
    "send_slack_message",
    "post_social",
    "delete_data",
    "transfer_money",
    "submit_form",
    "publish_content",
)


class EvalDecision(StrEnum):
    AUTO_SEND = "auto_send"
    NEEDS_REVIEW = "needs_review"
    BLOCKED = "blocked"


class L3Trigger(StrEnum):
    ALWAYS = "always"
    ON_IRREVERSIBLE_ACTION = "on_irreversible_action"
    ON_L2_FAIL = "on_l2_fail"


class EvalRules(BaseModel):
    """Per-agent (or per-node) evaluation rules."""

    assertions: list[Assertion] = Field(default_factory=list)
    criteria: list[str] = Field(default_factory=list)
    min_confidence: float | None = Field(
        default=None, description="L2 floor below which L3 is consulted"
    )
    auto_send_threshold: float | None = None
    mandatory_approval: bool = False
    l3_trigger: L3Trigger = L3Trigger.ON_IRREVERSIBLE_ACTION

    model_config = {"extra": "allow"}


@dataclass
class EvalResult:
    decision: EvalDecision
    l1: L1Result | None = None
    l2: L2Result | None = None
    l3: L3Result | None = None
    l3_triggers: list[str] = field(default_factory=list)
    block_reason: str | None = None
    suggestions: list[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.decision == EvalDecision.BLOCKED

    def summary(self) -> dict[str, Any]:
        """Compact form stored on confirmation records and trace steps."""
        return {
            "decision": str(self.decision),
            "l1_passed": self.l1.passed if self.l1 else None,
            "l2_score": round(self.l2.score, 3) if self.l2 else None,
            "l3_blocked": self.l3.blocked if self.l3 else None,
            "l3_triggers": list(self.l3_triggers),
            "block_reason": self.block_reason,
            "suggestions": list(self.suggestions),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.summary(),
            "l1": self.l1.to_dict() if self.l1 else None,
            "l2": self.l2.to_dict() if self.l2 else None,
            "l3": self.l3.to_dict() if self.l3 else None,
        }


def is_irreversible_action(action: str | None) -> bool:
    if not action:
        return False
    name = action.lower()
    return any(a in name for a in IRREVERSIBLE_ACTIONS)


class EvalEngine:
    """One instance per engine; holds the check catalog, scorer and judge."""

    def __init__(
        self,
        config: EvalConfig | None = None,
        llm: LLMProvider | None = None,
        catalog: AssertionCatalog | None = None,
        scorer: CriterionScorer | None = None,
        judge: SafetyJudge | None = None,
    ):
        self.config = config or EvalConfig()
        self.catalog = catalog or AssertionCatalog()
        self.scorer = scorer or CriterionScorer(llm)
        self.judge = judge or SafetyJudge(llm)

    # === Individual layers ===

    def run_l1(self, content: str, assertions: list[Assertion]) -> L1Result:
        return self.catalog.run(content, assertions)

    async def run_l2(self, content: str, criteria: list[str]) -> L2Result:
        return await self.scorer.run(content, criteria)

    async def run_l3(self, content: str, trigger_conditions: list[str]) -> L3Result:
        return await self.judge.judge(content, trigger_conditions)

    # === Pipeline ===

    async def evaluate(
        self, content: str, rules: EvalRules | None = None, action: str | None = None
    ) -> EvalResult:
        rules = rules or EvalRules()
        min_score = (
            rules.min_confidence if rules.min_confidence is not None else self.config.l2_min_score
        )
        threshold = (
            rules.auto_send_threshold
            if rules.auto_send_threshold is not None
            else self.config.auto_send_threshold
        )
        result = EvalResult(decision=EvalDecision.NEEDS_REVIEW)

        # L1: deterministic gate
        if self.config.enable_l1 and rules.assertions:
            result.l1 = self.run_l1(content, rules.assertions)
            if not result.l1.passed:
                messages = "; ".join(a.message or a.check for a in result.l1.failed)
                result.decision = EvalDecision.BLOCKED
                result.block_reason = f"L1 failed: {messages}"
                logger.info(f"Eval blocked at L1: {messages}")
                return result
            result.suggestions += [
                f"L1 warning: {w.message or w.check}" for w in result.l1.warnings
            ]

        # L2: scored criteria
        l2_score = 1.0
        if self.config.enable_l2:
            result.l2 = await self.run_l2(content, rules.criteria)
            l2_score = result.l2.score
            for criterion, score in result.l2.breakdown.items():
                if score < min_score:
                    result.suggestions.append(f"Improve '{criterion}' (scored {score:.2f})")

        # L3: consulted only when something raises doubt
        triggers = self._l3_triggers(rules, action, l2_score, min_score)
        result.l3_triggers = triggers
        if self.config.enable_l3 and triggers:
            result.l3 = await self.run_l3(content, triggers)
            if result.l3.blocked:
                result.decision = EvalDecision.BLOCKED
                result.block_reason = f"L3 blocked: {result.l3.reason}"
                logger.info(f"Eval blocked at L3: {result.l3.reason}")
                return result

        result.decision = self._decide(rules, l2_score, threshold, result.l3)
        logger.debug(f"Eval decision {result.decision} (l2={l2_score:.2f}, triggers={triggers})")
        return result

    def _l3_triggers(
        self, rules: EvalRules, action: str | None, l2_score: float, min_score: float
    ) -> list[str]:
        triggers: list[str] = []
        if rules.l3_trigger == L3Trigger.ALWAYS:
            triggers.append("Rule set requires L3 on every evaluation")
        if l2_score < min_score:
            triggers.append(f"L2 score {l2_score:.2f} below confidence floor {min_score:.2f}")
        if rules.mandatory_approval:
            triggers.append("Mandatory human approval rule applies")
        if rules.l3_trigger != L3Trigger.ON_L2_FAIL and is_irreversible_action(action):
            triggers.append(f"Irreversible action: {action}")
        return triggers

    @staticmethod
    def _decide(
        rules: EvalRules, l2_score: float, threshold: float, l3: L3Result | None
    ) -> EvalDecision:
        if rules.mandatory_approval:
            return EvalDecision.NEEDS_REVIEW
        if l3 is not None and not l3.judged:
            # L3 was required but nothing could judge it
            return EvalDecision.NEEDS_REVIEW
        if l2_score >= threshold:
            return EvalDecision.AUTO_SEND
        return EvalDecision.NEEDS_REVIEW
