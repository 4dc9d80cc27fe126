"""Offline improvement loop: insights, optimization runs and modification proposals."""

from flowengine.insights.analyzer import InsightsAnalyzer
from flowengine.insights.models import (
    AgentProfile,
    DataPoint,
    Feedback,
    FeedbackType,
    Insight,
    InsightInput,
    InsightType,
    ModificationProposal,
    OptimizationRun,
    Severity,
)
from flowengine.insights.optimizer import AgentOptimizer, OptimizationConfig, OptimizationGoal
from flowengine.insights.self_modifier import SelfModifier

__all__ = [
    "AgentOptimizer",
    "AgentProfile",
    "DataPoint",
    "Feedback",
    "FeedbackType",
    "Insight",
    "InsightInput",
    "InsightType",
    "InsightsAnalyzer",
    "ModificationProposal",
    "OptimizationConfig",
    "OptimizationGoal",
    "OptimizationRun",
    "SelfModifier",
    "Severity",
]
