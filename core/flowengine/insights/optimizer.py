"""
Agent Optimizer - turns feedback and metrics into an optimization run.

One strategy is picked per run, in this order:

1. few-shot learning: at least 5 corrections with corrected text
2. prompt rewrite: at least 10 thumbs-down items
3. model tier downgrade: mean cost above the configured ceiling
4. otherwise a prompt rewrite over all feedback

The run only describes the optimized configuration; writing it back is
someone else's decision.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from flowengine.insights.models import (
    ABTest,
    ABTestStatus,
    ABVariant,
    AgentProfile,
    AgentSnapshot,
    Feedback,
    FeedbackType,
    Improvement,
    OptimizationMethod,
    OptimizationRun,
    OptimizationStatus,
)
from flowengine.llm.pricing import downgrade_model

logger = logging.getLogger(__name__)

MIN_CORRECTIONS = 5
MIN_THUMBS_DOWN = 10
MAX_FEW_SHOT_EXAMPLES = 10
SIGNIFICANT_CHANGE_PCT = 1.0
AB_IMPROVEMENT_THRESHOLD = 0.05

LLMOptimizeFn = Callable[[str], Awaitable[str]]


@dataclass
class OptimizationGoal:
    metric: str  # success_rate | cost | latency | satisfaction
    target: float = 0.0
    weight: float = 1.0


@dataclass
class ABTestConfig:
    enabled: bool = False
    traffic_split: float = 0.5
    min_sample_size: int = 100


@dataclass
class OptimizationConfig:
    agent_id: str
    workspace_id: str = ""
    goals: list[OptimizationGoal] = field(
        default_factory=lambda: [OptimizationGoal("satisfaction"), OptimizationGoal("cost")]
    )
    max_cost_per_conversation: float | None = None
    ab_test: ABTestConfig = field(default_factory=ABTestConfig)


class AgentOptimizer:
    def __init__(self, config: OptimizationConfig, llm_optimize: LLMOptimizeFn | None = None):
        self.config = config
        self.llm_optimize = llm_optimize

    async def optimize(
        self, profile: AgentProfile, feedback: list[Feedback], metrics: dict[str, float]
    ) -> OptimizationRun:
        run = OptimizationRun(
            agent_id=self.config.agent_id,
            workspace_id=self.config.workspace_id,
            baseline=AgentSnapshot(
                system_prompt=profile.system_prompt,
                model=profile.model,
                temperature=profile.temperature,
                metrics=dict(metrics),
            ),
        )

        corrections = [f for f in feedback if f.is_correction]
        thumbs_down = [f for f in feedback if f.type == FeedbackType.THUMBS_DOWN]
        ceiling = self.config.max_cost_per_conversation

        try:
            if len(corrections) >= MIN_CORRECTIONS:
                run.method = OptimizationMethod.FEW_SHOT_LEARNING
                run.optimized = self._few_shot(run.baseline, corrections)
            elif len(thumbs_down) >= MIN_THUMBS_DOWN:
                run.method = OptimizationMethod.PROMPT_OPTIMIZATION
                run.optimized = await self._rewrite_prompt(run.baseline, thumbs_down)
            elif ceiling is not None and metrics.get("cost", 0.0) > ceiling:
                run.method = OptimizationMethod.MODEL_TIER_OPTIMIZATION
                run.optimized = self._downgrade(run.baseline)
            else:
                run.method = OptimizationMethod.PROMPT_OPTIMIZATION
                run.optimized = await self._rewrite_prompt(run.baseline, feedback)

            run.improvements = self._improvements(metrics, run.optimized.metrics)
            run.status = OptimizationStatus.COMPLETED
        except Exception as e:
            logger.error(f"Optimization run {run.id} for agent {run.agent_id} failed: {e}")
            run.status = OptimizationStatus.FAILED
            run.metadata["error"] = str(e)

        run.completed_at = datetime.now(UTC)
        logger.info(f"Optimization run {run.id}: {run.method} -> {run.status}")
        return run

    def _improvements(
        self, baseline: dict[str, float], optimized: dict[str, float]
    ) -> list[Improvement]:
        improvements = []
        for goal in self.config.goals:
            before = baseline.get(goal.metric, 0.0)
            after = optimized.get(goal.metric, before)
            if before == 0:
                continue
            change = (after - before) / before * 100
            if abs(change) > SIGNIFICANT_CHANGE_PCT:
                improvements.append(
                    Improvement(
                        metric=goal.metric,
                        baseline_value=before,
                        optimized_value=after,
                        improvement=change,
                    )
                )
        return improvements

    def _few_shot(self, baseline: AgentSnapshot, corrections: list[Feedback]) -> AgentSnapshot:
        examples = "\n".join(
            f"\nExample {i}:\nOriginal: {c.original_output}\nImproved: {c.corrected_text}\n"
            for i, c in enumerate(corrections[:MAX_FEW_SHOT_EXAMPLES], start=1)
        )
        section = (
            "\n\n## Style Examples\n\n"
            "Here are examples of how to respond. Notice the corrections made:\n"
            f"{examples}\n"
            "Follow the style demonstrated in the improved versions above."
        )
        return AgentSnapshot(
            system_prompt=baseline.system_prompt + section,
            model=baseline.model,
            temperature=baseline.temperature,
            # Estimated effect of style learning
            metrics={"satisfaction": 0.85},
        )

    async def _rewrite_prompt(
        self, baseline: AgentSnapshot, feedback: list[Feedback]
    ) -> AgentSnapshot:
        if self.llm_optimize is None:
            return AgentSnapshot(
                system_prompt=baseline.system_prompt,
                model=baseline.model,
                temperature=baseline.temperature,
            )

        issues = "\n- ".join(
            str(f.metadata.get("reason") or "User was unsatisfied") for f in feedback
        ) or "User was unsatisfied"
        goals = "\n".join(f"- Improve {g.metric} (weight: {g.weight})" for g in self.config.goals)
        prompt = f'''You are an expert at optimizing AI agent prompts.

Current system prompt:
"""
{baseline.system_prompt}
"""

Issues reported by users:
- {issues}

Optimization goals:
{goals}

Rewrite the system prompt to address these issues while maintaining the core functionality.
Return ONLY the optimized prompt, no explanation.'''
        rewritten = await self.llm_optimize(prompt)
        return AgentSnapshot(
            system_prompt=rewritten.strip(),
            model=baseline.model,
            temperature=baseline.temperature,
            metrics={"satisfaction": 0.8},
        )

    def _downgrade(self, baseline: AgentSnapshot) -> AgentSnapshot:
        cheaper = downgrade_model(baseline.model)
        cost = baseline.metrics.get("cost", 0.0)
        return AgentSnapshot(
            system_prompt=baseline.system_prompt,
            model=cheaper or baseline.model,
            temperature=baseline.temperature,
            # Roughly 30% cheaper per step down
            metrics={"cost": cost * 0.7 if cheaper else cost},
        )

    # === A/B testing ===

    def create_ab_test(
        self, control_prompt: str, variant_prompt: str, model: str, temperature: float
    ) -> ABTest:
        split = self.config.ab_test.traffic_split
        return ABTest(
            agent_id=self.config.agent_id,
            workspace_id=self.config.workspace_id,
            variants=[
                ABVariant(
                    name="control",
                    system_prompt=control_prompt,
                    model=model,
                    temperature=temperature,
                    traffic_percentage=1 - split,
                ),
                ABVariant(
                    name="variant",
                    system_prompt=variant_prompt,
                    model=model,
                    temperature=temperature,
                    traffic_percentage=split,
                ),
            ],
        )

    def evaluate_ab_test(self, test: ABTest) -> ABTest:
        """Declare a winner once both arms have enough samples and differ by more than 5%."""
        control = test.variant("control")
        variant = test.variant("variant")
        if control is None or variant is None or not self.config.goals:
            return test
        minimum = self.config.ab_test.min_sample_size
        if control.sample_size < minimum or variant.sample_size < minimum:
            return test

        metric = self.config.goals[0].metric
        control_value = control.metrics.get(metric, 0.0)
        variant_value = variant.metrics.get(metric, 0.0)
        if control_value == 0:
            return test
        change = (variant_value - control_value) / control_value
        if abs(change) > AB_IMPROVEMENT_THRESHOLD:
            test.winner = "variant" if change > 0 else "control"
            test.confidence = min(0.95, 0.5 + abs(change))
            test.status = ABTestStatus.COMPLETED
            test.completed_at = datetime.now(UTC)
        return test
