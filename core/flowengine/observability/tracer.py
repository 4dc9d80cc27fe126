"""Tracer: records every step of one execution with token/cost/latency metrics.

A Tracer lives for exactly one execution. It is handed to node executors via
their capabilities bundle; they call the ``log_*`` helpers as they work.
Aggregate metrics are updated on every append so ``get_metrics()`` is O(1).

Usage::

    tracer = Tracer(CreateTraceInput(agent_id="a1", user_id="u1"), on_save=store.save_trace)
    tracer.log_llm_call(model="claude-haiku", input=prompt, output=text,
                        tokens_in=120, tokens_out=80, cost=0.0004, duration_ms=900)
    trace = await tracer.complete(output={"ok": True})

Safety: persistence failures inside ``complete()`` are logged, never raised.
Trace storage trouble must not turn a successful run into a failed one.
"""

from __future__ import annotations

import logging
import time
import traceback
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from flowengine.observability.logging import get_trace_context
from flowengine.observability.trace_schemas import (
    StepType,
    Trace,
    TraceMetrics,
    TraceStatus,
    TraceStep,
)

logger = logging.getLogger(__name__)

OnSave = Callable[[Trace], Awaitable[None]]


class CreateTraceInput(BaseModel):
    agent_id: str
    user_id: str
    workspace_id: str = ""
    conversation_id: str | None = None
    execution_id: str | None = None
    triggered_by: str = "manual"
    user_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def _short_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class Tracer:
    """Single-execution step recorder."""

    def __init__(self, data: CreateTraceInput, on_save: OnSave | None = None) -> None:
        self._data = data
        self._on_save = on_save
        self.trace_id = _short_id("trace")
        self._started_at = datetime.now(UTC)
        self._start_monotonic = time.monotonic()
        self._steps: list[TraceStep] = []
        self._metrics = TraceMetrics()
        self._completed = False

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def steps(self) -> list[TraceStep]:
        return list(self._steps)

    # === CORE ===

    def log_step(
        self,
        type: StepType | str,
        input: Any = None,
        output: Any = None,
        duration_ms: int = 0,
        error: str = "",
        metadata: dict[str, Any] | None = None,
        **fields: Any,
    ) -> str:
        """Append a step and fold it into the running metrics. Returns the step id."""
        if self._completed:
            raise RuntimeError(f"Trace {self.trace_id} is already complete")

        ctx = get_trace_context()
        step = TraceStep(
            id=_short_id("step"),
            trace_id=self.trace_id,
            type=StepType(type),
            input=input,
            output=output,
            duration_ms=int(duration_ms),
            error=error,
            metadata=metadata or {},
            span_id=uuid.uuid4().hex[:16],
            execution_id=self._data.execution_id or ctx.get("execution_id", ""),
            timestamp=datetime.now(UTC),
            **fields,
        )
        self._steps.append(step)
        self._update_metrics(step)
        return step.id

    def _update_metrics(self, step: TraceStep) -> None:
        m = self._metrics
        m.steps_count += 1
        m.total_duration_ms += step.duration_ms
        m.tokens_in += step.tokens_in
        m.tokens_out += step.tokens_out
        m.total_cost += step.cost
        if step.type == StepType.LLM_CALL:
            m.llm_calls += 1
        elif step.type == StepType.TOOL_CALL:
            m.tool_calls += 1
        elif step.type == StepType.DECISION:
            m.decisions += 1
        elif step.type == StepType.ERROR:
            m.errors += 1

    # === CONVENIENCE WRAPPERS ===

    def log_llm_call(
        self,
        model: str,
        input: Any,
        output: Any,
        tokens_in: int = 0,
        tokens_out: int = 0,
        cost: float = 0.0,
        duration_ms: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        return self.log_step(
            StepType.LLM_CALL,
            input=input,
            output=output,
            duration_ms=duration_ms,
            metadata=metadata,
            model=model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost=cost,
        )

    def log_tool_call(
        self,
        tool_name: str,
        input: Any,
        output: Any,
        duration_ms: int = 0,
        success: bool = True,
        error: str = "",
    ) -> str:
        return self.log_step(
            StepType.TOOL_CALL,
            input=input,
            output=output,
            duration_ms=duration_ms,
            error=error,
            metadata={"success": success},
            tool_name=tool_name,
        )

    def log_decision(
        self, reasoning: str, decision: Any, metadata: dict[str, Any] | None = None
    ) -> str:
        return self.log_step(
            StepType.DECISION,
            input={"reasoning": reasoning},
            output=decision,
            metadata=metadata,
        )

    def log_error(self, error: BaseException | str, metadata: dict[str, Any] | None = None) -> str:
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        else:
            message, stack = error, ""
        return self.log_step(
            StepType.ERROR, error=message, metadata=metadata, stacktrace=stack
        )

    # === READ / FINALIZE ===

    def get_metrics(self) -> TraceMetrics:
        """Snapshot of the running metrics; total_duration_ms is wall time so far."""
        snapshot = self._metrics.model_copy()
        snapshot.total_duration_ms = self._elapsed_ms()
        return snapshot

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._start_monotonic) * 1000)

    async def complete(
        self, output: Any = None, status: TraceStatus | str = TraceStatus.COMPLETED
    ) -> Trace:
        """Finalize the trace and hand it to the persistence callback (once)."""
        if self._completed:
            raise RuntimeError(f"Trace {self.trace_id} is already complete")
        self._completed = True

        duration_ms = self._elapsed_ms()
        metrics = self._metrics.model_copy()
        metrics.total_duration_ms = duration_ms

        trace = Trace(
            id=self.trace_id,
            agent_id=self._data.agent_id,
            user_id=self._data.user_id,
            workspace_id=self._data.workspace_id,
            conversation_id=self._data.conversation_id,
            execution_id=self._data.execution_id,
            triggered_by=self._data.triggered_by,
            user_message=self._data.user_message,
            status=TraceStatus(status),
            output=output,
            steps=list(self._steps),
            metrics=metrics,
            metadata=self._data.metadata,
            started_at=self._started_at,
            completed_at=datetime.now(UTC),
            duration_ms=duration_ms,
        )

        if self._on_save is not None:
            try:
                await self._on_save(trace)
            except Exception as e:
                logger.error(f"Failed to persist trace {self.trace_id}: {e}", exc_info=True)

        logger.info(
            f"Trace {self.trace_id} {trace.status}: {metrics.steps_count} steps, "
            f"{metrics.llm_calls} llm calls, ${metrics.total_cost:.4f}",
            extra={"latency_ms": duration_ms},
        )
        return trace
