"""
Self-Modifier - proposes configuration changes from insights and feedback.

Proposals start ``pending`` and only move to ``approved`` or ``rejected``
through ``review``. Applying an approved proposal to the live agent is
left to the caller. While a proposal from one source (an insight type,
or style corrections) is pending, that source proposes nothing new.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from flowengine.insights.models import (
    AgentProfile,
    ConfigChange,
    ExpectedImpact,
    Feedback,
    Insight,
    InsightType,
    ModificationProposal,
    ModificationType,
    ProposalEvidence,
    ProposalStatus,
    Severity,
)
from flowengine.llm.pricing import downgrade_model
from flowengine.storage.backend import RecordStore

logger = logging.getLogger(__name__)

MIN_STYLE_CORRECTIONS = 5
STYLE_EXAMPLES = 5

# Recommendation keyword -> tool that addresses it
TOOL_HINTS = (
    ("cache", "caching_tool"),
    ("parallel", "parallel_executor"),
    ("optimize", "optimization_tool"),
)

STYLE_SOURCE = "feedback:style"

LLMGenerateFn = Callable[[str], Awaitable[str]]


def _latest_per_type(insights: list[Insight]) -> list[Insight]:
    latest: dict[InsightType, Insight] = {}
    for insight in insights:
        current = latest.get(insight.type)
        if current is None or insight.detected_at > current.detected_at:
            latest[insight.type] = insight
    return list(latest.values())


class SelfModifier:
    def __init__(
        self,
        proposals: RecordStore[ModificationProposal] | None = None,
        llm_generate: LLMGenerateFn | None = None,
    ):
        self.proposals = proposals
        self.llm_generate = llm_generate

    async def propose_modifications(
        self,
        profile: AgentProfile,
        insights: list[Insight],
        feedback: list[Feedback],
        metrics: dict[str, float],
    ) -> list[ModificationProposal]:
        proposals: list[ModificationProposal] = []
        taken = await self._pending_sources(profile.agent_id)

        actionable = [i for i in insights if i.severity in (Severity.HIGH, Severity.CRITICAL)]
        for insight in _latest_per_type(actionable):
            source = f"insight:{insight.type}"
            if source in taken:
                logger.debug(f"Agent {profile.agent_id} already has a pending {source} proposal")
                continue
            proposal = None
            if insight.type == InsightType.FAILURE_PATTERN:
                proposal = await self._prompt_update(profile, insight, metrics)
            elif insight.type == InsightType.COST_OPTIMIZATION:
                proposal = self._model_change(profile, insight, metrics)
            elif insight.type == InsightType.PERFORMANCE_BOTTLENECK:
                proposal = self._tool_addition(profile, insight, metrics)
            if proposal is not None:
                proposal.source = source
                proposals.append(proposal)

        corrections = [f for f in feedback if f.corrected_text]
        if len(corrections) > MIN_STYLE_CORRECTIONS and STYLE_SOURCE not in taken:
            proposal = await self._style_update(profile, corrections, metrics)
            if proposal is not None:
                proposal.source = STYLE_SOURCE
                proposals.append(proposal)

        if self.proposals is not None:
            for proposal in proposals:
                await self.proposals.save(proposal.id, proposal)
        logger.info(f"Proposed {len(proposals)} modification(s) for agent {profile.agent_id}")
        return proposals

    async def _pending_sources(self, agent_id: str) -> set[str]:
        if self.proposals is None:
            return set()
        pending = await self.proposals.list(
            lambda p: p.agent_id == agent_id and p.status == ProposalStatus.PENDING
        )
        return {p.source for p in pending if p.source}

    async def review(
        self, proposal_id: str, approved: bool, reviewer: str | None = None
    ) -> ModificationProposal:
        """Approve or reject a pending proposal."""
        if self.proposals is None:
            raise RuntimeError("SelfModifier has no proposal store")
        proposal = await self.proposals.load(proposal_id)
        if proposal is None:
            raise KeyError(f"Proposal not found: {proposal_id}")
        if proposal.status != ProposalStatus.PENDING:
            raise ValueError(f"Proposal {proposal_id} is already {proposal.status}")

        proposal.status = ProposalStatus.APPROVED if approved else ProposalStatus.REJECTED
        proposal.reviewed_at = datetime.now(UTC)
        proposal.reviewed_by = reviewer
        await self.proposals.save(proposal.id, proposal)
        logger.info(f"Proposal {proposal_id} {proposal.status}")
        return proposal

    # === Proposal builders ===

    async def _prompt_update(
        self, profile: AgentProfile, insight: Insight, metrics: dict[str, float]
    ) -> ModificationProposal | None:
        if self.llm_generate is None:
            return None
        recommendations = "\n- ".join(insight.recommendations)
        prompt = f'''You are an AI agent optimization expert.

Current system prompt:
"""
{profile.system_prompt}
"""

Problem identified:
{insight.description}

Recommendations:
- {recommendations}

Generate an improved system prompt that addresses this problem.
Include specific instructions to prevent the identified failure pattern.
Return ONLY the improved prompt, no explanation.'''
        try:
            improved = await self.llm_generate(prompt)
        except Exception as e:
            logger.error(f"Prompt update proposal failed: {e}")
            return None

        success_rate = metrics.get("success_rate", 0.5)
        return ModificationProposal(
            agent_id=profile.agent_id,
            workspace_id=profile.workspace_id,
            type=ModificationType.PROMPT_UPDATE,
            current=ConfigChange(system_prompt=profile.system_prompt),
            proposed=ConfigChange(system_prompt=improved.strip()),
            rationale=f"Addresses {insight.type}: {insight.description}",
            expected_impact=[
                ExpectedImpact(
                    metric="success_rate",
                    current_value=success_rate,
                    expected_value=min(1.0, success_rate * 1.3),
                    confidence=0.7,
                )
            ],
            evidence=ProposalEvidence(insights=[insight.id], metrics=metrics),
        )

    def _model_change(
        self, profile: AgentProfile, insight: Insight, metrics: dict[str, float]
    ) -> ModificationProposal | None:
        cheaper = downgrade_model(profile.model)
        if cheaper is None or cheaper == profile.model:
            return None
        cost = metrics.get("cost", 0.0)
        return ModificationProposal(
            agent_id=profile.agent_id,
            workspace_id=profile.workspace_id,
            type=ModificationType.PARAMETER_TUNING,
            current=ConfigChange(model=profile.model),
            proposed=ConfigChange(model=cheaper),
            rationale=f"Reduce costs while maintaining quality. {insight.description}",
            expected_impact=[
                ExpectedImpact(
                    metric="cost", current_value=cost, expected_value=cost * 0.3, confidence=0.9
                )
            ],
            evidence=ProposalEvidence(insights=[insight.id], metrics=metrics),
        )

    def _tool_addition(
        self, profile: AgentProfile, insight: Insight, metrics: dict[str, float]
    ) -> ModificationProposal | None:
        suggested: list[str] = []
        for recommendation in insight.recommendations:
            text = recommendation.lower()
            tool = next((t for hint, t in TOOL_HINTS if hint in text), None)
            if tool and tool not in suggested and tool not in profile.tools:
                suggested.append(tool)
        if not suggested:
            return None

        latency = metrics.get("latency", 0.0)
        return ModificationProposal(
            agent_id=profile.agent_id,
            workspace_id=profile.workspace_id,
            type=ModificationType.TOOL_ADDITION,
            current=ConfigChange(tools=list(profile.tools)),
            proposed=ConfigChange(tools=[*profile.tools, *suggested]),
            rationale=f"Add tools to improve performance: {insight.description}",
            expected_impact=[
                ExpectedImpact(
                    metric="latency",
                    current_value=latency,
                    expected_value=latency * 0.6,
                    confidence=0.6,
                )
            ],
            evidence=ProposalEvidence(insights=[insight.id], metrics=metrics),
        )

    async def _style_update(
        self, profile: AgentProfile, corrections: list[Feedback], metrics: dict[str, float]
    ) -> ModificationProposal | None:
        if self.llm_generate is None:
            return None
        examples = "\n\n".join(c.corrected_text or "" for c in corrections[:STYLE_EXAMPLES])
        prompt = f"""Analyze these corrected responses and extract the preferred writing style:

{examples}

Describe the style in 2-3 sentences (tone, structure, formality level, etc.)."""
        try:
            style = await self.llm_generate(prompt)
        except Exception as e:
            logger.error(f"Style update proposal failed: {e}")
            return None

        updated = (
            f"{profile.system_prompt}\n\n## Writing Style\n\n{style.strip()}\n\n"
            "Follow this style in all your responses."
        )
        return ModificationProposal(
            agent_id=profile.agent_id,
            workspace_id=profile.workspace_id,
            type=ModificationType.PROMPT_UPDATE,
            current=ConfigChange(system_prompt=profile.system_prompt),
            proposed=ConfigChange(system_prompt=updated),
            rationale="Incorporate user's preferred writing style based on corrections",
            expected_impact=[
                ExpectedImpact(
                    metric="satisfaction",
                    current_value=metrics.get("satisfaction", 0.5),
                    expected_value=0.85,
                    confidence=0.8,
                )
            ],
            evidence=ProposalEvidence(feedback=[c.id for c in corrections], metrics=metrics),
        )
