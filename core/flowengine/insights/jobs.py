"""
Batch jobs feeding stored traces and feedback through the improvement loop.

Each job works per agent over a trailing window and persists what it
produces. They run from the system schedules and re-derive all of their
input from storage. A repeated tick on the same day overwrites that day's
insights and optimization runs (their ids come from agent, kind and day),
and proposals are only made for sources with nothing already pending.
"""

import hashlib
import json
import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any

from flowengine.insights.analyzer import InsightsAnalyzer
from flowengine.insights.models import (
    AgentProfile,
    DataPoint,
    DataPointType,
    Feedback,
    Insight,
    InsightInput,
    ModificationProposal,
    OptimizationRun,
)
from flowengine.insights.optimizer import AgentOptimizer, OptimizationConfig
from flowengine.insights.self_modifier import SelfModifier
from flowengine.llm.provider import LLMProvider
from flowengine.observability.trace_schemas import Trace, TraceStatus
from flowengine.storage.bundle import EngineStorage

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(days=30)


# ---------------------------------------------------------------------------
# LLM adapters
# ---------------------------------------------------------------------------


def text_generator(llm: LLMProvider | None):
    if llm is None:
        return None

    async def generate(prompt: str) -> str:
        return await llm.complete_text(prompt, max_tokens=2000)

    return generate


def json_analyzer(llm: LLMProvider | None):
    if llm is None:
        return None

    async def analyze(prompt: str) -> dict[str, Any]:
        reply = await llm.complete_text(prompt, max_tokens=1000, json_mode=True)
        match = re.search(r"\{.*\}", reply, re.DOTALL)
        if not match:
            return {}
        return json.loads(match.group(0))

    return analyze


# ---------------------------------------------------------------------------
# Data points
# ---------------------------------------------------------------------------


def trace_to_data_point(trace: Trace) -> DataPoint:
    failed = trace.status in (TraceStatus.FAILED, TraceStatus.BLOCKED)
    metrics: dict[str, float] = {
        "success": 0.0 if failed else 1.0,
        "cost": trace.metrics.total_cost,
        "latencyMs": float(trace.duration_ms),
        "tokens": float(trace.metrics.tokens_in + trace.metrics.tokens_out),
    }
    if "satisfaction" in trace.metadata:
        metrics["satisfaction"] = float(trace.metadata["satisfaction"])
    error = next((s.error for s in reversed(trace.steps) if s.error), None)
    return DataPoint(
        id=trace.id,
        type=DataPointType.TRACE,
        timestamp=trace.started_at,
        metrics=metrics,
        metadata={
            "status": "failed" if failed else str(trace.status),
            "error": error,
            "context": trace.metadata.get("workflow_id"),
        },
    )


def summarize_metrics(points: list[DataPoint]) -> dict[str, float]:
    """Window averages keyed the way proposals and optimizer goals expect."""
    if not points:
        return {}
    n = len(points)
    metrics = {
        "success_rate": sum(p.metrics.get("success", 0.0) for p in points) / n,
        "cost": sum(p.metrics.get("cost", 0.0) for p in points) / n,
        "latency": sum(p.metrics.get("latencyMs", 0.0) for p in points) / n,
    }
    rated = [p.metrics["satisfaction"] for p in points if "satisfaction" in p.metrics]
    if rated:
        metrics["satisfaction"] = sum(rated) / len(rated)
    return metrics


def daily_record_id(prefix: str, agent_id: str, kind: str, now: datetime) -> str:
    """Same id for the same agent, kind and UTC day, so a repeated tick overwrites."""
    day = now.astimezone(UTC).date().isoformat()
    digest = hashlib.sha256(f"{agent_id}:{kind}:{day}".encode()).hexdigest()
    return f"{prefix}_{digest[:16]}"


class InsightJobs:
    """The three scheduled improvement jobs, bound to one storage bundle."""

    def __init__(
        self,
        storage: EngineStorage,
        llm: LLMProvider | None = None,
        window: timedelta = DEFAULT_WINDOW,
    ):
        self.storage = storage
        self.llm = llm
        self.window = window

    async def _agent_window(
        self, profile: AgentProfile, now: datetime
    ) -> tuple[list[DataPoint], list[Feedback]]:
        since = now - self.window
        traces = await self.storage.traces.list(
            lambda t: t.agent_id == profile.agent_id and t.started_at >= since
        )
        feedback = await self.storage.feedback.list(
            lambda f: f.agent_id == profile.agent_id and f.timestamp >= since
        )
        return [trace_to_data_point(t) for t in traces], feedback

    async def generate_insights(self, now: datetime | None = None) -> list[Insight]:
        now = now or datetime.now(UTC)
        analyzer = InsightsAnalyzer(json_analyzer(self.llm))
        produced: list[Insight] = []
        for profile in await self.storage.agents.list():
            points, _ = await self._agent_window(profile, now)
            insights = await analyzer.analyze(
                InsightInput(
                    agent_id=profile.agent_id,
                    workspace_id=profile.workspace_id,
                    start=now - self.window,
                    end=now,
                    data_points=points,
                )
            )
            for insight in insights:
                insight.id = daily_record_id("insight", profile.agent_id, insight.type, now)
                await self.storage.insights.save(insight.id, insight)
            produced += insights
        logger.info(f"generate-insights stored {len(produced)} insight(s)")
        return produced

    async def run_optimization(self, now: datetime | None = None) -> list[OptimizationRun]:
        now = now or datetime.now(UTC)
        runs: list[OptimizationRun] = []
        for profile in await self.storage.agents.list():
            points, feedback = await self._agent_window(profile, now)
            if not points and not feedback:
                continue
            optimizer = AgentOptimizer(
                OptimizationConfig(
                    agent_id=profile.agent_id,
                    workspace_id=profile.workspace_id,
                    max_cost_per_conversation=profile.max_cost_per_conversation,
                ),
                text_generator(self.llm),
            )
            run = await optimizer.optimize(profile, feedback, summarize_metrics(points))
            run.id = daily_record_id("optim", profile.agent_id, "optimization", now)
            await self.storage.optimization_runs.save(run.id, run)
            runs.append(run)
        logger.info(f"run-optimization completed {len(runs)} run(s)")
        return runs

    async def propose_modifications(
        self, now: datetime | None = None
    ) -> list[ModificationProposal]:
        now = now or datetime.now(UTC)
        since = now - self.window
        modifier = SelfModifier(self.storage.proposals, text_generator(self.llm))
        proposals: list[ModificationProposal] = []
        for profile in await self.storage.agents.list():
            points, feedback = await self._agent_window(profile, now)
            insights = await self.storage.insights.list(
                lambda i: i.agent_id == profile.agent_id and i.detected_at >= since
            )
            proposals += await modifier.propose_modifications(
                profile, insights, feedback, summarize_metrics(points)
            )
        logger.info(f"propose-modifications created {len(proposals)} proposal(s)")
        return proposals
