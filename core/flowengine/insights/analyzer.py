"""
Insights Analyzer - pattern detection over historical runs.

Four detectors run over one window of data points:

- failure patterns: failure rate above 10% (critical above 30%)
- success clusters: more than 30% of points completed with satisfaction > 0.8
- cost outliers: points costing more than twice the mean
- latency bottlenecks: p95 latency above 10 s (high above 20 s)

Insights are returned most severe first, ties broken by confidence.
"""

import json
import logging
import math
from collections.abc import Awaitable, Callable
from typing import Any

from flowengine.insights.models import (
    DataPoint,
    Insight,
    InsightEvidence,
    InsightImpact,
    InsightInput,
    InsightType,
    Severity,
)

logger = logging.getLogger(__name__)

FAILURE_RATE_THRESHOLD = 0.1
CRITICAL_FAILURE_RATE = 0.3
TARGET_SUCCESS_RATE = 0.95
SUCCESS_CLUSTER_SHARE = 0.3
HIGH_SATISFACTION = 0.8
COST_OUTLIER_FACTOR = 2.0
COST_OUTLIER_SHARE = 0.2
P95_LATENCY_MS = 10_000
HIGH_P95_LATENCY_MS = 20_000
MAX_EXAMPLES = 5

LLMAnalyzeFn = Callable[[str], Awaitable[dict[str, Any]]]


def is_failure(point: DataPoint) -> bool:
    return point.metadata.get("status") == "failed" or point.metrics.get("success") == 0


def percentile(values: list[float], fraction: float) -> float:
    """Nearest-rank style percentile: ``sorted[floor(n * fraction)]``, clamped to the last value."""
    ordered = sorted(values)
    index = min(len(ordered) - 1, math.floor(len(ordered) * fraction))
    return ordered[index]


class InsightsAnalyzer:
    def __init__(self, llm_analyze: LLMAnalyzeFn | None = None):
        self.llm_analyze = llm_analyze

    async def analyze(self, data: InsightInput) -> list[Insight]:
        if not data.data_points:
            return []
        insights: list[Insight] = []
        insights += await self.detect_failure_patterns(data)
        insights += self.detect_success_patterns(data)
        insights += self.detect_cost_optimizations(data)
        insights += self.detect_performance_bottlenecks(data)
        insights.sort(key=lambda i: (i.severity.rank, i.confidence), reverse=True)
        logger.info(f"Generated {len(insights)} insight(s) for agent {data.agent_id}")
        return insights

    async def detect_failure_patterns(self, data: InsightInput) -> list[Insight]:
        failures = [p for p in data.data_points if is_failure(p)]
        if not failures:
            return []
        rate = len(failures) / len(data.data_points)
        if rate <= FAILURE_RATE_THRESHOLD:
            return []

        reasons = await self._failure_reasons(failures)
        current = 1 - rate
        gain = (TARGET_SUCCESS_RATE - current) / current * 100 if current else 100.0
        return [
            Insight(
                agent_id=data.agent_id,
                workspace_id=data.workspace_id,
                type=InsightType.FAILURE_PATTERN,
                title=f"High failure rate detected ({rate * 100:.1f}%)",
                description=(
                    "Agent is failing frequently. "
                    f"Common reasons: {', '.join(reasons) or 'unknown'}"
                ),
                severity=Severity.CRITICAL if rate > CRITICAL_FAILURE_RATE else Severity.HIGH,
                confidence=min(1.0, len(failures) / 10),
                impact=InsightImpact(
                    metric="success_rate",
                    current=current,
                    potential=TARGET_SUCCESS_RATE,
                    improvement=gain,
                ),
                evidence=InsightEvidence(
                    data_points=len(failures), examples=[f.id for f in failures[:MAX_EXAMPLES]]
                ),
                recommendations=reasons
                or [
                    "Review error logs for common patterns",
                    "Add better error handling",
                    "Validate inputs before execution",
                ],
            )
        ]

    async def _failure_reasons(self, failures: list[DataPoint]) -> list[str]:
        if self.llm_analyze is None:
            return []
        context = [
            {"error": f.metadata.get("error"), "context": f.metadata.get("context")}
            for f in failures[:10]
        ]
        prompt = f"""Analyze these failure cases and identify common patterns:

{json.dumps(context, indent=2, default=str)}

Return a JSON object with:
- commonPatterns: array of pattern descriptions
- rootCause: likely root cause
- recommendations: array of specific actions to fix"""
        try:
            analysis = await self.llm_analyze(prompt)
        except Exception as e:
            logger.error(f"Failure pattern analysis failed: {e}")
            return []
        patterns = analysis.get("commonPatterns") or []
        return [str(p) for p in patterns] if isinstance(patterns, list) else []

    def detect_success_patterns(self, data: InsightInput) -> list[Insight]:
        total = len(data.data_points)
        successes = [
            p
            for p in data.data_points
            if p.metadata.get("status") == "completed"
            and p.metrics.get("satisfaction", 0) > HIGH_SATISFACTION
        ]
        if len(successes) <= total * SUCCESS_CLUSTER_SHARE:
            return []

        share = len(successes) / total
        return [
            Insight(
                agent_id=data.agent_id,
                workspace_id=data.workspace_id,
                type=InsightType.SUCCESS_PATTERN,
                title="Strong performance on specific types of conversations",
                description="Agent shows consistent success with certain conversation patterns",
                severity=Severity.LOW,
                confidence=min(1.0, len(successes) / 20),
                impact=InsightImpact(
                    metric="success_rate",
                    current=share,
                    potential=1.0,
                    improvement=(1 - share) / share * 100,
                ),
                evidence=InsightEvidence(
                    data_points=len(successes), examples=[s.id for s in successes[:MAX_EXAMPLES]]
                ),
                recommendations=[
                    "Analyze successful patterns to replicate across all conversations",
                    "Use successful examples for few-shot learning",
                ],
            )
        ]

    def detect_cost_optimizations(self, data: InsightInput) -> list[Insight]:
        costed = [p for p in data.data_points if p.metrics.get("cost", 0) > 0]
        if not costed:
            return []
        costs = [p.metrics["cost"] for p in costed]
        mean = sum(costs) / len(costs)
        outliers = [p for p in costed if p.metrics["cost"] > mean * COST_OUTLIER_FACTOR]
        if not outliers:
            return []

        widespread = len(outliers) > len(costs) * COST_OUTLIER_SHARE
        return [
            Insight(
                agent_id=data.agent_id,
                workspace_id=data.workspace_id,
                type=InsightType.COST_OPTIMIZATION,
                title=f"{len(outliers)} conversations cost >2x average",
                description=(
                    "Some conversations are significantly more expensive than average. "
                    f"Avg: ${mean:.4f}, Max: ${max(costs):.4f}"
                ),
                severity=Severity.MEDIUM if widespread else Severity.LOW,
                confidence=0.9,
                impact=InsightImpact(
                    metric="cost", current=mean, potential=mean * 0.7, improvement=30
                ),
                evidence=InsightEvidence(
                    data_points=len(outliers), examples=[p.id for p in outliers[:MAX_EXAMPLES]]
                ),
                recommendations=[
                    "Use cheaper models (Haiku instead of Sonnet) for simple queries",
                    "Implement caching for repeated queries",
                    "Optimize prompts to reduce token usage",
                    "Set maxTokens limits to prevent runaway costs",
                ],
            )
        ]

    def detect_performance_bottlenecks(self, data: InsightInput) -> list[Insight]:
        timed = [p for p in data.data_points if p.metrics.get("latencyMs", 0) > 0]
        if not timed:
            return []
        latencies = [p.metrics["latencyMs"] for p in timed]
        mean = sum(latencies) / len(latencies)
        p95 = percentile(latencies, 0.95)
        if p95 <= P95_LATENCY_MS:
            return []

        slow = [p for p in timed if p.metrics["latencyMs"] >= p95]
        return [
            Insight(
                agent_id=data.agent_id,
                workspace_id=data.workspace_id,
                type=InsightType.PERFORMANCE_BOTTLENECK,
                title="Slow response times detected",
                description=f"P95 latency is {p95 / 1000:.1f}s (avg: {mean / 1000:.1f}s)",
                severity=Severity.HIGH if p95 > HIGH_P95_LATENCY_MS else Severity.MEDIUM,
                confidence=0.95,
                impact=InsightImpact(
                    metric="latency", current=mean, potential=mean * 0.5, improvement=50
                ),
                evidence=InsightEvidence(
                    data_points=len(latencies), examples=[p.id for p in slow[:MAX_EXAMPLES]]
                ),
                recommendations=[
                    "Use parallel tool calls when possible",
                    "Cache frequently accessed data",
                    "Optimize database queries",
                    "Use streaming for long responses",
                ],
            )
        ]
