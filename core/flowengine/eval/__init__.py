"""
Layered evaluation of generated content.

L1 deterministic assertions, L2 scored criteria, L3 LLM safety veto, and
the gate that applies the resulting decision to side-effecting actions.
"""

from flowengine.eval.assertions import (
    Assertion,
    AssertionCatalog,
    AssertionResult,
    AssertionSeverity,
    L1Result,
    run_l1,
)
from flowengine.eval.engine import (
    EvalDecision,
    EvalEngine,
    EvalResult,
    EvalRules,
    L3Trigger,
    is_irreversible_action,
)
from flowengine.eval.gate import (
    ACTION_LABELS,
    SIDE_EFFECT_ACTIONS,
    AutonomyTier,
    ConfirmationRecord,
    ConfirmationStatus,
    EvalGate,
    GateOutcome,
    GateStatus,
)
from flowengine.eval.judge import L3Result, SafetyJudge, run_l3
from flowengine.eval.scoring import CriterionScorer, L2Result, run_l2

__all__ = [
    "ACTION_LABELS",
    "SIDE_EFFECT_ACTIONS",
    "Assertion",
    "AssertionCatalog",
    "AssertionResult",
    "AssertionSeverity",
    "AutonomyTier",
    "ConfirmationRecord",
    "ConfirmationStatus",
    "CriterionScorer",
    "EvalDecision",
    "EvalEngine",
    "EvalGate",
    "EvalResult",
    "EvalRules",
    "GateOutcome",
    "GateStatus",
    "L1Result",
    "L2Result",
    "L3Result",
    "L3Trigger",
    "SafetyJudge",
    "is_irreversible_action",
    "run_l1",
    "run_l2",
    "run_l3",
]
