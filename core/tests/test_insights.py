"""
Tests for the improvement loop: insight detection, the optimizer, the
self-modifier and the scheduled batch jobs.
"""

import json
from datetime import UTC, datetime, timedelta

import pytest

from flowengine.insights.analyzer import InsightsAnalyzer, percentile
from flowengine.insights.jobs import InsightJobs, summarize_metrics, trace_to_data_point
from flowengine.insights.models import (
    ABTestStatus,
    AgentProfile,
    DataPoint,
    Feedback,
    FeedbackType,
    Insight,
    InsightEvidence,
    InsightImpact,
    InsightInput,
    InsightType,
    ModificationType,
    OptimizationMethod,
    OptimizationStatus,
    ProposalStatus,
    Severity,
)
from flowengine.insights.optimizer import AgentOptimizer, OptimizationConfig
from flowengine.insights.self_modifier import SelfModifier
from flowengine.llm.mock import MockLLMProvider
from flowengine.observability.trace_schemas import Trace, TraceMetrics, TraceStatus
from flowengine.storage.backend import InMemoryRecordStore
from flowengine.storage.bundle import EngineStorage

NOW = datetime(2025, 3, 3, 4, 0, tzinfo=UTC)
SONNET = "anthropic/claude-sonnet-4-20250514"


def _point(i, status="completed", **metrics):
    return DataPoint(id=f"p{i}", metrics=metrics, metadata={"status": status, "error": "timeout"})


def _feedback(kind, n, corrected=None):
    return [
        Feedback(
            agent_id="agent-1",
            type=kind,
            original_output=f"draft {i}",
            corrected_text=corrected and f"{corrected} {i}",
            metadata={"reason": "too long"},
        )
        for i in range(n)
    ]


def _insight(kind, severity, recommendations=()):
    return Insight(
        agent_id="agent-1",
        type=kind,
        title="t",
        description="something is off",
        severity=severity,
        confidence=0.9,
        impact=InsightImpact(metric="x", current=1, potential=1, improvement=0),
        evidence=InsightEvidence(data_points=1),
        recommendations=list(recommendations),
    )


PROFILE = AgentProfile(
    agent_id="agent-1", system_prompt="You write follow-up emails.", model=SONNET, tools=["search"]
)


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class TestInsightsAnalyzer:
    @pytest.mark.asyncio
    async def test_empty_input(self):
        assert await InsightsAnalyzer().analyze(InsightInput(agent_id="a")) == []

    @pytest.mark.asyncio
    async def test_failure_pattern_severity(self):
        points = [_point(i, "failed", success=0) for i in range(4)] + [
            _point(i + 4, success=1) for i in range(6)
        ]
        insights = await InsightsAnalyzer().detect_failure_patterns(
            InsightInput(agent_id="a", data_points=points)
        )
        assert len(insights) == 1
        assert insights[0].severity == Severity.CRITICAL
        assert insights[0].impact.current == pytest.approx(0.6)
        assert insights[0].confidence == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_failure_rate_at_threshold_is_ignored(self):
        points = [_point(0, "failed")] + [_point(i, success=1) for i in range(1, 10)]
        assert await InsightsAnalyzer().detect_failure_patterns(
            InsightInput(agent_id="a", data_points=points)
        ) == []

    @pytest.mark.asyncio
    async def test_failure_patterns_use_llm_analysis(self):
        async def analyze(prompt):
            assert "timeout" in prompt
            return {"commonPatterns": ["Upstream API timeouts"]}

        points = [_point(i, "failed") for i in range(2)] + [_point(9, success=1)]
        insights = await InsightsAnalyzer(analyze).detect_failure_patterns(
            InsightInput(agent_id="a", data_points=points)
        )
        assert insights[0].recommendations == ["Upstream API timeouts"]
        assert "Upstream API timeouts" in insights[0].description

    def test_success_cluster(self):
        points = [_point(i, satisfaction=0.9) for i in range(4)] + [_point(9, satisfaction=0.2)]
        insights = InsightsAnalyzer().detect_success_patterns(
            InsightInput(agent_id="a", data_points=points)
        )
        assert insights[0].type == InsightType.SUCCESS_PATTERN
        assert insights[0].severity == Severity.LOW

    def test_cost_outliers(self):
        points = [_point(i, cost=0.01) for i in range(9)] + [_point(9, cost=0.5)]
        insights = InsightsAnalyzer().detect_cost_optimizations(
            InsightInput(agent_id="a", data_points=points)
        )
        assert insights[0].evidence.examples == ["p9"]
        assert insights[0].severity == Severity.LOW

    def test_latency_bottleneck(self):
        points = [_point(i, latencyMs=1000) for i in range(18)] + [
            _point(18, latencyMs=25_000),
            _point(19, latencyMs=30_000),
        ]
        insights = InsightsAnalyzer().detect_performance_bottlenecks(
            InsightInput(agent_id="a", data_points=points)
        )
        assert insights[0].severity == Severity.HIGH
        assert insights[0].evidence.examples == ["p19"]

    def test_percentile(self):
        assert percentile([5, 1, 3], 0.95) == 5
        assert percentile(list(range(100)), 0.5) == 50

    @pytest.mark.asyncio
    async def test_sorted_by_severity_then_confidence(self):
        points = (
            [_point(i, "failed", success=0, cost=0.01, latencyMs=500) for i in range(5)]
            + [_point(i + 5, cost=0.01, latencyMs=500, satisfaction=0.95) for i in range(4)]
            + [_point(9, cost=1.0, latencyMs=500, satisfaction=0.95)]
        )
        insights = await InsightsAnalyzer().analyze(InsightInput(agent_id="a", data_points=points))
        ranks = [(i.severity.rank, i.confidence) for i in insights]
        assert ranks == sorted(ranks, reverse=True)
        assert insights[0].type == InsightType.FAILURE_PATTERN


# ---------------------------------------------------------------------------
# Optimizer
# ---------------------------------------------------------------------------


class TestAgentOptimizer:
    def _optimizer(self, llm=None, ceiling=None):
        config = OptimizationConfig(agent_id="agent-1", max_cost_per_conversation=ceiling)
        return AgentOptimizer(config, llm)

    @pytest.mark.asyncio
    async def test_few_shot_from_corrections(self):
        feedback = _feedback(FeedbackType.EXPLICIT_CORRECTION, 5, corrected="Better")
        run = await self._optimizer().optimize(PROFILE, feedback, {"satisfaction": 0.5})

        assert run.status == OptimizationStatus.COMPLETED
        assert run.method == OptimizationMethod.FEW_SHOT_LEARNING
        assert "## Style Examples" in run.optimized.system_prompt
        assert "Improved: Better 4" in run.optimized.system_prompt
        assert run.improvements[0].metric == "satisfaction"
        assert run.improvements[0].improvement == pytest.approx(70.0)

    @pytest.mark.asyncio
    async def test_prompt_rewrite_from_thumbs_down(self):
        prompts = []

        async def rewrite(prompt):
            prompts.append(prompt)
            return "  A sharper prompt.  "

        feedback = _feedback(FeedbackType.THUMBS_DOWN, 10)
        run = await self._optimizer(rewrite).optimize(PROFILE, feedback, {"satisfaction": 0.6})

        assert run.method == OptimizationMethod.PROMPT_OPTIMIZATION
        assert run.optimized.system_prompt == "A sharper prompt."
        assert "too long" in prompts[0]

    @pytest.mark.asyncio
    async def test_cost_ceiling_downgrades_model(self):
        run = await self._optimizer(ceiling=0.05).optimize(PROFILE, [], {"cost": 0.1})
        assert run.method == OptimizationMethod.MODEL_TIER_OPTIMIZATION
        assert run.optimized.model == "anthropic/claude-3-5-haiku-20241022"
        assert run.improvements[0].metric == "cost"
        assert run.improvements[0].improvement == pytest.approx(-30.0)

    @pytest.mark.asyncio
    async def test_llm_failure_marks_run_failed(self):
        async def rewrite(prompt):
            raise RuntimeError("provider down")

        feedback = _feedback(FeedbackType.THUMBS_DOWN, 10)
        run = await self._optimizer(rewrite).optimize(PROFILE, feedback, {})
        assert run.status == OptimizationStatus.FAILED
        assert run.metadata["error"] == "provider down"
        assert run.completed_at is not None

    @pytest.mark.asyncio
    async def test_zero_baseline_is_not_an_improvement(self):
        feedback = _feedback(FeedbackType.USER_EDIT, 6, corrected="Edit")
        run = await self._optimizer().optimize(PROFILE, feedback, {})
        assert run.improvements == []

    def test_ab_test_winner(self):
        optimizer = self._optimizer()
        optimizer.config.ab_test.min_sample_size = 10
        test = optimizer.create_ab_test("old", "new", SONNET, 0.7)
        assert [v.traffic_percentage for v in test.variants] == [0.5, 0.5]

        test.variant("control").sample_size = 20
        test.variant("control").metrics = {"satisfaction": 0.6}
        test.variant("variant").sample_size = 20
        test.variant("variant").metrics = {"satisfaction": 0.75}

        result = optimizer.evaluate_ab_test(test)
        assert result.winner == "variant"
        assert result.status == ABTestStatus.COMPLETED

    def test_ab_test_waits_for_samples(self):
        optimizer = self._optimizer()
        test = optimizer.create_ab_test("old", "new", SONNET, 0.7)
        assert optimizer.evaluate_ab_test(test).status == ABTestStatus.RUNNING


# ---------------------------------------------------------------------------
# Self-modifier
# ---------------------------------------------------------------------------


class TestSelfModifier:
    @pytest.mark.asyncio
    async def test_proposals_from_insights(self):
        async def generate(prompt):
            return "Improved prompt"

        store = InMemoryRecordStore()
        modifier = SelfModifier(store, generate)
        insights = [
            _insight(InsightType.FAILURE_PATTERN, Severity.CRITICAL),
            _insight(InsightType.COST_OPTIMIZATION, Severity.HIGH),
            _insight(
                InsightType.PERFORMANCE_BOTTLENECK,
                Severity.HIGH,
                ["Use PARALLEL tool calls", "Cache frequently accessed data", "Stream"],
            ),
            _insight(InsightType.COST_OPTIMIZATION, Severity.LOW),
        ]

        proposals = await modifier.propose_modifications(PROFILE, insights, [], {"cost": 0.2})

        assert [p.type for p in proposals] == [
            ModificationType.PROMPT_UPDATE,
            ModificationType.PARAMETER_TUNING,
            ModificationType.TOOL_ADDITION,
        ]
        assert proposals[0].proposed.system_prompt == "Improved prompt"
        assert proposals[1].proposed.model == "anthropic/claude-3-5-haiku-20241022"
        assert proposals[2].proposed.tools == ["search", "parallel_executor", "caching_tool"]
        assert all(p.status == ProposalStatus.PENDING for p in proposals)
        assert len(await store.list()) == 3

    @pytest.mark.asyncio
    async def test_prompt_update_needs_llm(self):
        proposals = await SelfModifier().propose_modifications(
            PROFILE, [_insight(InsightType.FAILURE_PATTERN, Severity.HIGH)], [], {}
        )
        assert proposals == []

    @pytest.mark.asyncio
    async def test_style_update_after_many_corrections(self):
        async def generate(prompt):
            return "Warm, brief, no jargon."

        corrections = _feedback(FeedbackType.USER_EDIT, 6, corrected="Edited")
        proposals = await SelfModifier(llm_generate=generate).propose_modifications(
            PROFILE, [], corrections, {}
        )
        assert len(proposals) == 1
        assert "## Writing Style" in proposals[0].proposed.system_prompt
        assert len(proposals[0].evidence.feedback) == 6

    @pytest.mark.asyncio
    async def test_five_corrections_are_not_enough(self):
        async def generate(prompt):
            return "style"

        corrections = _feedback(FeedbackType.USER_EDIT, 5, corrected="Edited")
        assert await SelfModifier(llm_generate=generate).propose_modifications(
            PROFILE, [], corrections, {}
        ) == []

    @pytest.mark.asyncio
    async def test_review_moves_only_pending(self):
        store = InMemoryRecordStore()
        modifier = SelfModifier(store)
        [proposal] = await modifier.propose_modifications(
            PROFILE, [_insight(InsightType.COST_OPTIMIZATION, Severity.HIGH)], [], {}
        )

        reviewed = await modifier.review(proposal.id, approved=True, reviewer="lead")
        assert reviewed.status == ProposalStatus.APPROVED
        assert reviewed.reviewed_by == "lead"
        with pytest.raises(ValueError):
            await modifier.review(proposal.id, approved=False)

    @pytest.mark.asyncio
    async def test_pending_source_is_not_proposed_again(self):
        store = InMemoryRecordStore()
        modifier = SelfModifier(store)
        insights = [_insight(InsightType.COST_OPTIMIZATION, Severity.HIGH)]

        [first] = await modifier.propose_modifications(PROFILE, insights, [], {})
        assert first.source == "insight:cost_optimization"
        assert await modifier.propose_modifications(PROFILE, insights, [], {}) == []

        await modifier.review(first.id, approved=False)
        [second] = await modifier.propose_modifications(PROFILE, insights, [], {})
        assert second.id != first.id
        assert len(await store.list()) == 2


# ---------------------------------------------------------------------------
# Batch jobs
# ---------------------------------------------------------------------------


def _trace(i, status=TraceStatus.COMPLETED, cost=0.01, started=NOW - timedelta(days=1)):
    return Trace(
        id=f"trace_{i}",
        agent_id="agent-1",
        user_id="u1",
        status=status,
        metrics=TraceMetrics(total_cost=cost, tokens_in=10, tokens_out=5),
        started_at=started,
        duration_ms=1200,
    )


class TestInsightJobs:
    async def _storage(self, traces):
        storage = EngineStorage.in_memory()
        await storage.agents.save("agent-1", PROFILE)
        for trace in traces:
            await storage.traces.save(trace.id, trace)
        return storage

    def test_trace_to_data_point(self):
        point = trace_to_data_point(_trace(1, TraceStatus.FAILED))
        assert point.metrics["success"] == 0.0
        assert point.metrics["tokens"] == 15
        assert point.metadata["status"] == "failed"

    def test_summarize_metrics(self):
        points = [
            trace_to_data_point(_trace(1)),
            trace_to_data_point(_trace(2, TraceStatus.FAILED)),
        ]
        metrics = summarize_metrics(points)
        assert metrics["success_rate"] == 0.5
        assert metrics["latency"] == 1200
        assert "satisfaction" not in metrics
        assert summarize_metrics([]) == {}

    @pytest.mark.asyncio
    async def test_generate_insights_stores_results(self):
        traces = [_trace(i, TraceStatus.FAILED) for i in range(3)] + [_trace(9)]
        traces.append(_trace(99, TraceStatus.FAILED, started=NOW - timedelta(days=90)))
        storage = await self._storage(traces)
        llm = MockLLMProvider(responses=[json.dumps({"commonPatterns": ["Bad input"]})])

        insights = await InsightJobs(storage, llm).generate_insights(NOW)

        failure = next(i for i in insights if i.type == InsightType.FAILURE_PATTERN)
        assert failure.evidence.data_points == 3
        assert failure.recommendations == ["Bad input"]
        assert len(await storage.insights.list()) == len(insights)

    @pytest.mark.asyncio
    async def test_run_optimization_per_agent(self):
        storage = await self._storage([_trace(1)])
        for fb in _feedback(FeedbackType.EXPLICIT_CORRECTION, 5, corrected="Fixed"):
            await storage.feedback.save(fb.id, fb)

        runs = await InsightJobs(storage).run_optimization(NOW)

        assert [r.method for r in runs] == [OptimizationMethod.FEW_SHOT_LEARNING]
        assert len(await storage.optimization_runs.list()) == 1

    @pytest.mark.asyncio
    async def test_run_optimization_skips_idle_agents(self):
        storage = await self._storage([])
        assert await InsightJobs(storage).run_optimization(NOW) == []

    @pytest.mark.asyncio
    async def test_propose_modifications_reads_stored_insights(self):
        storage = await self._storage([_trace(1)])
        insight = _insight(InsightType.COST_OPTIMIZATION, Severity.HIGH)
        insight.detected_at = NOW - timedelta(days=1)
        await storage.insights.save(insight.id, insight)

        proposals = await InsightJobs(storage).propose_modifications(NOW)

        assert [p.type for p in proposals] == [ModificationType.PARAMETER_TUNING]
        assert (await storage.proposals.load(proposals[0].id)).status == ProposalStatus.PENDING

    @pytest.mark.asyncio
    async def test_repeated_ticks_do_not_duplicate(self):
        storage = await self._storage([_trace(i, TraceStatus.FAILED) for i in range(3)])
        insight = _insight(
            InsightType.PERFORMANCE_BOTTLENECK, Severity.HIGH, ["Cache frequently accessed data"]
        )
        insight.detected_at = NOW - timedelta(days=1)
        await storage.insights.save(insight.id, insight)
        jobs = InsightJobs(storage)

        first = await jobs.propose_modifications(NOW)
        again = await jobs.propose_modifications(NOW)
        assert [p.type for p in first] == [ModificationType.TOOL_ADDITION]
        assert again == []
        assert [p.status for p in await storage.proposals.list()] == [ProposalStatus.PENDING]

        generated = await jobs.generate_insights(NOW)
        regenerated = await jobs.generate_insights(NOW + timedelta(hours=1))
        assert generated
        assert sorted(i.id for i in generated) == sorted(i.id for i in regenerated)
        assert len(await storage.insights.list()) == len(generated) + 1
