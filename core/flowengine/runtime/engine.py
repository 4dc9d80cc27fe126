"""
Engine - one explicitly constructed object that owns every runtime piece.

Construct it once at process start and pass it (or its parts) to callers;
nothing in the package keeps module-level engine state.

    engine = Engine(EngineConfig(), storage=EngineStorage.on_disk(path), llm=provider)
    await engine.start()
    await engine.enqueue_workflow(JobPayload(workflow_id="wf_1", triggered_by="manual"))
    ...
    await engine.stop()

Jobs go through Celery (``engine.celery``). ``start()`` binds the running
event loop so Celery's worker threads can hand job coroutines to it; a
deployment runs ``engine.celery_worker().start()`` alongside that loop.
"""

import asyncio
import logging
from typing import Any

import httpx
from celery.result import AsyncResult

from flowengine.config import EngineConfig
from flowengine.errors import JobFailed
from flowengine.eval.engine import EvalEngine
from flowengine.eval.gate import ConfirmationRecord, EvalGate
from flowengine.executors import register_builtin_executors
from flowengine.graph.capabilities import ActionSink, CalendarSource, Capabilities, StepRunner
from flowengine.graph.executor import JobPayload, JobResult, WorkflowExecutor
from flowengine.graph.models import Execution, Workflow
from flowengine.graph.registry import ExecutorRegistry
from flowengine.insights.jobs import InsightJobs
from flowengine.llm.provider import LLMProvider
from flowengine.runtime.event_bus import EventBus
from flowengine.runtime.queue import (
    EventLoopRunner,
    Job,
    JobHandler,
    JobQueue,
    create_celery_app,
)
from flowengine.storage.bundle import EngineStorage
from flowengine.triggers.calendar_poller import CalendarPoller
from flowengine.triggers.schedule_poller import SchedulePoller
from flowengine.triggers.system_schedules import (
    BATCH_SCHEDULES,
    CHECK_CALENDAR_EVENTS,
    CHECK_SCHEDULE_TRIGGERS,
    GENERATE_INSIGHTS,
    PROPOSE_MODIFICATIONS,
    RUN_OPTIMIZATION,
    SystemSchedule,
    polling_schedules,
    register_system_schedules,
)

logger = logging.getLogger(__name__)

WORKFLOW_JOB = "execute-workflow"


class Engine:
    def __init__(
        self,
        config: EngineConfig | None = None,
        storage: EngineStorage | None = None,
        llm: LLMProvider | None = None,
        calendar: CalendarSource | None = None,
        actions: ActionSink | None = None,
        http: httpx.AsyncClient | None = None,
        registry: ExecutorRegistry | None = None,
    ):
        self.config = config or EngineConfig()
        self.storage = storage or EngineStorage.in_memory()
        self.llm = llm
        self.actions = actions
        self.event_bus = EventBus()

        self.registry = registry or register_builtin_executors(ExecutorRegistry())
        self.eval_engine = EvalEngine(self.config.eval, llm=llm)
        self.gate = EvalGate(self.eval_engine, self.storage.confirmations, self.event_bus)

        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=30.0, follow_redirects=True)
        self.capabilities = Capabilities(
            step=StepRunner(),
            llm=llm,
            http=self.http,
            actions=actions,
            calendar=calendar,
            gate=self.gate,
        )
        self.executor = WorkflowExecutor(
            self.registry,
            executions=self.storage.executions,
            workflows=self.storage.workflows,
            traces=self.storage.traces,
            capabilities=self.capabilities,
            event_bus=self.event_bus,
        )

        self.celery = create_celery_app(self.config.queue)
        self.runner = EventLoopRunner()
        self.workflow_queue = JobQueue(self.celery, "workflows", self.config.queue, self.runner)
        self.system_queue = JobQueue(self.celery, "system", self.config.queue, self.runner)
        self.schedule_poller = SchedulePoller(
            self.storage.triggers, self.enqueue_workflow, self.config.scheduler, self.event_bus
        )
        self.calendar_poller = (
            CalendarPoller(
                self.storage.workflows,
                calendar,
                self.enqueue_workflow,
                self.config.scheduler,
                self.event_bus,
            )
            if calendar is not None
            else None
        )
        self.insight_jobs = InsightJobs(self.storage, llm)

        self._system_handlers = {
            CHECK_SCHEDULE_TRIGGERS: self.schedule_poller.poll_once,
            GENERATE_INSIGHTS: self.insight_jobs.generate_insights,
            RUN_OPTIMIZATION: self.insight_jobs.run_optimization,
            PROPOSE_MODIFICATIONS: self.insight_jobs.propose_modifications,
        }
        if self.calendar_poller is not None:
            self._system_handlers[CHECK_CALENDAR_EVENTS] = self.calendar_poller.poll_once

        self.workflow_queue.register(WORKFLOW_JOB, self._handle_workflow_job)
        for name in self._system_handlers:
            self.system_queue.register(name, self._handle_system_job)
        # Pollers must not overlap, so system jobs run one at a time
        self._system_lock = asyncio.Lock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    # === Lifecycle ===

    def system_schedules(self) -> list[SystemSchedule]:
        schedules = list(BATCH_SCHEDULES) + list(
            polling_schedules(self.config.scheduler.poll_interval_s)
        )
        return [s for s in schedules if s.name in self._system_handlers]

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.runner.bind(asyncio.get_running_loop())
        register_system_schedules(self.system_queue, self.system_schedules())
        logger.info("Engine started")

    async def stop(self) -> None:
        """Graceful shutdown: no new jobs, in-flight jobs finish (bounded by the timeout)."""
        if self._running:
            self._running = False
            self.system_queue.close()
            self.workflow_queue.close()
            await self.runner.drain(self.config.queue.graceful_shutdown_timeout_s)
            self.runner.unbind()
            logger.info("Engine stopped")
        if self._owns_http and not self.http.is_closed:
            await self.http.aclose()

    def celery_worker(self, beat: bool = True, loglevel: str = "INFO"):
        """Celery worker consuming this engine's queues, with beat for the system schedules."""
        return self.celery.Worker(
            queues=[self.workflow_queue.name, self.system_queue.name],
            concurrency=self.config.queue.concurrency,
            pool_cls="threads",
            beat=beat,
            loglevel=loglevel,
        )

    # === Work entry points ===

    def register_job(self, name: str, handler: JobHandler, attempts: int | None = None) -> None:
        """Add a host-defined job to the workflow queue. ``send_*`` jobs get one attempt."""
        self.workflow_queue.register(name, handler, attempts)

    async def enqueue_workflow(self, payload: JobPayload) -> AsyncResult:
        return await self.workflow_queue.add(WORKFLOW_JOB, payload.model_dump(mode="json"))

    async def enqueue(self, name: str, data: Any = None, job_id: str | None = None) -> AsyncResult:
        return await self.workflow_queue.add(name, data, job_id=job_id)

    async def run_workflow(
        self,
        workflow: Workflow,
        initial_data: dict[str, Any] | None = None,
        user_id: str | None = None,
        triggered_by: str = "manual",
    ) -> Execution:
        """Execute a workflow inline, without the queue."""
        return await self.executor.execute(
            workflow=workflow,
            user_id=user_id or workflow.user_id,
            initial_data=initial_data,
            triggered_by=triggered_by,
        )

    async def resolve_confirmation(
        self, confirmation_id: str, approved: bool, resolved_by: str | None = None
    ) -> ConfirmationRecord:
        """Approve (performing the queued action) or reject a pending confirmation."""
        record = await self.storage.confirmations.load(confirmation_id)
        if record is None:
            raise KeyError(f"Confirmation not found: {confirmation_id}")
        actions = self.actions

        async def perform() -> dict[str, Any]:
            if actions is None:
                raise RuntimeError("Capability 'actions' is not configured")
            return await actions.perform(record.action, record.action_args, record.user_id)

        return await self.gate.resolve(confirmation_id, approved, perform, resolved_by)

    # === Job handlers ===

    async def _handle_workflow_job(self, job: Job) -> JobResult:
        payload = job.data
        if not isinstance(payload, JobPayload):
            payload = JobPayload.model_validate(payload)
        result = await self.executor.run_job(payload, job_id=job.id)
        if result.retryable:
            # Let the queue retry the whole job per its attempts/backoff
            raise JobFailed(job.name, result.error or "execution failed", result)
        return result

    async def _handle_system_job(self, job: Job) -> Any:
        handler = self._system_handlers.get(job.name)
        if handler is None:
            logger.warning(f"No handler for system job {job.name}")
            return None
        async with self._system_lock:
            return await handler()
