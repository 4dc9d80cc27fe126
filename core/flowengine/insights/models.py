"""Records produced and consumed by the offline improvement loop."""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# === Inputs ===


class DataPointType(StrEnum):
    TRACE = "trace"
    EVALUATION = "evaluation"
    FEEDBACK = "feedback"


class DataPoint(BaseModel):
    """One observation: ``metrics`` holds numbers (cost, latencyMs, success, satisfaction)."""

    id: str
    type: DataPointType = DataPointType.TRACE
    timestamp: datetime = Field(default_factory=_utcnow)
    metrics: dict[str, float] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class InsightInput(BaseModel):
    agent_id: str
    workspace_id: str = ""
    start: datetime | None = None
    end: datetime | None = None
    data_points: list[DataPoint] = Field(default_factory=list)


class FeedbackType(StrEnum):
    THUMBS_UP = "thumbs_up"
    THUMBS_DOWN = "thumbs_down"
    USER_EDIT = "user_edit"
    APPROVAL_REJECT = "approval_reject"
    EXPLICIT_CORRECTION = "explicit_correction"
    RETRY_REQUEST = "retry_request"


CORRECTION_TYPES = (FeedbackType.EXPLICIT_CORRECTION, FeedbackType.USER_EDIT)


class Feedback(BaseModel):
    id: str = Field(default_factory=lambda: _id("fb"))
    agent_id: str
    user_id: str = ""
    trace_id: str | None = None
    conversation_id: str | None = None
    type: FeedbackType
    original_output: str = ""
    corrected_text: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def is_correction(self) -> bool:
        return self.type in CORRECTION_TYPES and bool(self.corrected_text)


class AgentProfile(BaseModel):
    """The live configuration of an agent, as read by the batch jobs."""

    agent_id: str
    workspace_id: str = ""
    system_prompt: str = ""
    model: str = ""
    temperature: float = 0.7
    tools: list[str] = Field(default_factory=list)
    max_cost_per_conversation: float | None = None


# === Insights ===


class InsightType(StrEnum):
    FAILURE_PATTERN = "failure_pattern"
    SUCCESS_PATTERN = "success_pattern"
    COST_OPTIMIZATION = "cost_optimization"
    PERFORMANCE_BOTTLENECK = "performance_bottleneck"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3, Severity.CRITICAL: 4}


class InsightImpact(BaseModel):
    metric: str
    current: float
    potential: float
    improvement: float  # percent


class InsightEvidence(BaseModel):
    data_points: int
    examples: list[str] = Field(default_factory=list)


class Insight(BaseModel):
    id: str = Field(default_factory=lambda: _id("insight"))
    agent_id: str
    workspace_id: str = ""
    type: InsightType
    title: str
    description: str
    severity: Severity
    confidence: float = Field(ge=0.0, le=1.0)
    impact: InsightImpact
    evidence: InsightEvidence
    recommendations: list[str] = Field(default_factory=list)
    detected_at: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


# === Optimization ===


class OptimizationMethod(StrEnum):
    PROMPT_OPTIMIZATION = "prompt_optimization"
    MODEL_TIER_OPTIMIZATION = "model_tier_optimization"
    FEW_SHOT_LEARNING = "few_shot_learning"


class OptimizationStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentSnapshot(BaseModel):
    system_prompt: str
    model: str
    temperature: float
    metrics: dict[str, float] = Field(default_factory=dict)


class Improvement(BaseModel):
    metric: str
    baseline_value: float
    optimized_value: float
    improvement: float  # percent


class OptimizationRun(BaseModel):
    id: str = Field(default_factory=lambda: _id("optim"))
    agent_id: str
    workspace_id: str = ""
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
    status: OptimizationStatus = OptimizationStatus.RUNNING
    baseline: AgentSnapshot
    optimized: AgentSnapshot | None = None
    improvements: list[Improvement] = Field(default_factory=list)
    method: OptimizationMethod = OptimizationMethod.PROMPT_OPTIMIZATION
    metadata: dict[str, Any] = Field(default_factory=dict)


class ABTestStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ABVariant(BaseModel):
    name: str  # "control" or "variant"
    system_prompt: str
    model: str
    temperature: float
    traffic_percentage: float
    sample_size: int = 0
    metrics: dict[str, float] = Field(default_factory=dict)


class ABTest(BaseModel):
    id: str = Field(default_factory=lambda: _id("abtest"))
    agent_id: str
    workspace_id: str = ""
    status: ABTestStatus = ABTestStatus.RUNNING
    variants: list[ABVariant]
    winner: str | None = None
    confidence: float = 0.0
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    def variant(self, name: str) -> ABVariant | None:
        return next((v for v in self.variants if v.name == name), None)


# === Self-modification proposals ===


class ModificationType(StrEnum):
    PROMPT_UPDATE = "prompt_update"
    TOOL_ADDITION = "tool_addition"
    TOOL_REMOVAL = "tool_removal"
    PARAMETER_TUNING = "parameter_tuning"


class ProposalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ConfigChange(BaseModel):
    system_prompt: str | None = None
    model: str | None = None
    temperature: float | None = None
    tools: list[str] | None = None


class ExpectedImpact(BaseModel):
    metric: str
    current_value: float
    expected_value: float
    confidence: float


class ProposalEvidence(BaseModel):
    insights: list[str] = Field(default_factory=list)
    feedback: list[str] = Field(default_factory=list)
    metrics: dict[str, float] = Field(default_factory=dict)


class ModificationProposal(BaseModel):
    """A suggested config change. Nothing in the engine applies it."""

    id: str = Field(default_factory=lambda: _id("proposal"))
    agent_id: str
    workspace_id: str = ""
    type: ModificationType
    status: ProposalStatus = ProposalStatus.PENDING
    current: ConfigChange
    proposed: ConfigChange
    rationale: str
    expected_impact: list[ExpectedImpact] = Field(default_factory=list)
    evidence: ProposalEvidence = Field(default_factory=ProposalEvidence)
    created_at: datetime = Field(default_factory=_utcnow)
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    # What prompted it ("insight:<type>" or "feedback:style"); one pending proposal per source
    source: str = ""
