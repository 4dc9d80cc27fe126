"""Pydantic models for execution traces.

A Trace is 1:1 with one execution attempt. TraceSteps are appended in
order and never edited; TraceMetrics is a running fold over the steps.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class StepType(StrEnum):
    TOOL_CALL = "tool_call"
    LLM_CALL = "llm_call"
    DECISION = "decision"
    ERROR = "error"


class TraceStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"
    PENDING_REVIEW = "pending_review"


class TraceStep(BaseModel):
    """One append-only log entry within a trace.

    OTel-aligned fields (span_id, execution_id) allow correlation with the
    structured logs emitted during the same execution.
    """

    id: str
    trace_id: str
    type: StepType
    input: Any = None
    output: Any = None
    duration_ms: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    cost: float = 0.0
    model: str = ""
    tool_name: str = ""
    error: str = ""
    stacktrace: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    span_id: str = ""
    execution_id: str = ""
    timestamp: datetime


class TraceMetrics(BaseModel):
    steps_count: int = 0
    llm_calls: int = 0
    tool_calls: int = 0
    decisions: int = 0
    errors: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    total_cost: float = 0.0
    total_duration_ms: int = 0


class Trace(BaseModel):
    id: str
    agent_id: str
    user_id: str
    workspace_id: str = ""
    conversation_id: str | None = None
    execution_id: str | None = None
    triggered_by: str = "manual"
    user_message: str | None = None
    status: TraceStatus = TraceStatus.RUNNING
    output: Any = None
    steps: list[TraceStep] = Field(default_factory=list)
    metrics: TraceMetrics = Field(default_factory=TraceMetrics)
    metadata: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int = 0
