"""The set of record stores one engine instance works against."""

from dataclasses import dataclass
from pathlib import Path

from flowengine.eval.gate import ConfirmationRecord
from flowengine.graph.models import Execution, Workflow
from flowengine.insights.models import (
    AgentProfile,
    Feedback,
    Insight,
    ModificationProposal,
    OptimizationRun,
)
from flowengine.observability.trace_schemas import Trace
from flowengine.storage.backend import FileRecordStore, InMemoryRecordStore, RecordStore
from flowengine.triggers.models import Trigger


@dataclass
class EngineStorage:
    workflows: RecordStore[Workflow]
    executions: RecordStore[Execution]
    triggers: RecordStore[Trigger]
    traces: RecordStore[Trace]
    confirmations: RecordStore[ConfirmationRecord]
    agents: RecordStore[AgentProfile]
    feedback: RecordStore[Feedback]
    insights: RecordStore[Insight]
    optimization_runs: RecordStore[OptimizationRun]
    proposals: RecordStore[ModificationProposal]

    @classmethod
    def in_memory(cls) -> "EngineStorage":
        return cls(
            workflows=InMemoryRecordStore(),
            executions=InMemoryRecordStore(),
            triggers=InMemoryRecordStore(),
            traces=InMemoryRecordStore(),
            confirmations=InMemoryRecordStore(),
            agents=InMemoryRecordStore(),
            feedback=InMemoryRecordStore(),
            insights=InMemoryRecordStore(),
            optimization_runs=InMemoryRecordStore(),
            proposals=InMemoryRecordStore(),
        )

    @classmethod
    def on_disk(cls, base_path: str | Path) -> "EngineStorage":
        base = Path(base_path)
        return cls(
            workflows=FileRecordStore(base, "workflows", Workflow),
            executions=FileRecordStore(base, "executions", Execution),
            triggers=FileRecordStore(base, "triggers", Trigger),
            traces=FileRecordStore(base, "traces", Trace),
            confirmations=FileRecordStore(base, "confirmations", ConfirmationRecord),
            agents=FileRecordStore(base, "agents", AgentProfile),
            feedback=FileRecordStore(base, "feedback", Feedback),
            insights=FileRecordStore(base, "insights", Insight),
            optimization_runs=FileRecordStore(base, "optimization_runs", OptimizationRun),
            proposals=FileRecordStore(base, "proposals", ModificationProposal),
        )
