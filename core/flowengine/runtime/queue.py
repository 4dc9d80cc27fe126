"""
Job queues on Celery.

Each ``JobQueue`` is one named Celery queue on a shared app. Handlers are
async and run on the engine's event loop: Celery executes a task in one of
its worker threads (or in the caller, in eager mode), and the task hands the
handler coroutine to that loop and blocks until it finishes.

Jobs are delivered at least once. A handler that raises is retried by
Celery's ``autoretry_for`` with exponential backoff
(``backoff_delay_s * 2 ** (attempt - 1)``) until its attempts are used up.
Send jobs (names starting with ``send_``) get a single attempt so an external
send is never repeated by the queue.

Fixed cadences are Celery beat entries keyed by queue and job name;
registering the same name again replaces the previous entry.
"""

import asyncio
import concurrent.futures
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from celery import Celery, Task
from celery.result import AsyncResult
from celery.schedules import crontab
from pydantic_core import to_jsonable_python

from flowengine.config import QueueConfig
from flowengine.errors import TriggerParseError
from flowengine.triggers.cron import is_valid_expression

logger = logging.getLogger(__name__)

SEND_JOB_PREFIX = "send_"


def create_celery_app(config: QueueConfig | None = None, name: str = "flowengine") -> Celery:
    config = config or QueueConfig()
    app = Celery(name, broker=config.broker_url, backend=config.result_backend)
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        # Acknowledge after the handler finishes; re-queue if the worker dies
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        # Handlers share one event loop, so the pool is threads
        worker_pool="threads",
        worker_concurrency=config.concurrency,
        worker_hijack_root_logger=False,
        result_expires=60 * 60 * 24,
        task_always_eager=config.eager,
        task_eager_propagates=False,
        beat_schedule={},
    )
    return app


def cron_schedule(pattern: str) -> crontab:
    """Five-field cron pattern as a beat ``crontab``."""
    if len(pattern.split()) != 5 or not is_valid_expression(pattern):
        raise TriggerParseError(pattern, "not a valid five-field cron pattern")
    minute, hour, day_of_month, month_of_year, day_of_week = pattern.split()
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


@dataclass
class Job:
    """What a handler sees: the payload plus which attempt this is."""

    id: str
    name: str
    data: Any = None
    attempt: int = 1
    attempts: int = 1


@dataclass
class RepeatableJob:
    name: str
    data: Any = None
    pattern: str | None = None
    every_s: float | None = None


JobHandler = Callable[[Job], Awaitable[Any]]


class EventLoopRunner:
    """
    Runs job coroutines on the loop that owns the engine's async resources.

    Celery calls ``run`` from its own threads; each call blocks that thread
    until the coroutine completes on the bound loop.
    """

    def __init__(self):
        self._loop: asyncio.AbstractEventLoop | None = None
        self._in_flight: set[concurrent.futures.Future] = set()

    @property
    def is_bound(self) -> bool:
        return self._loop is not None and not self._loop.is_closed()

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def unbind(self) -> None:
        self._loop = None

    def run(self, coro: Coroutine[Any, Any, Any]) -> Any:
        if not self.is_bound:
            coro.close()
            raise RuntimeError("No event loop bound for jobs; start the engine first")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        self._in_flight.add(future)
        future.add_done_callback(self._in_flight.discard)
        return future.result()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def drain(self, timeout: float) -> None:
        """Wait for in-flight jobs, cancelling whatever is still running at the timeout."""
        pending = [asyncio.wrap_future(f) for f in list(self._in_flight)]
        if not pending:
            return
        logger.info(f"Waiting for {len(pending)} in-flight job(s)")
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for future in still_running:
            future.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} job(s) still busy after {timeout}s")
            await asyncio.gather(*still_running, return_exceptions=True)


class JobTask(Task):
    """Celery task base that logs retries and final failures."""

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        logger.warning(
            f"Job {self.name} ({task_id}) failed attempt {self.request.retries + 1}: "
            f"{exc}; retrying"
        )

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(
            f"Job {self.name} ({task_id}) failed after {self.request.retries + 1} attempt(s): {exc}"
        )


class JobQueue:
    """One named Celery queue. Register a handler per job name, then add jobs by name."""

    def __init__(
        self,
        app: Celery,
        name: str,
        config: QueueConfig | None = None,
        runner: EventLoopRunner | None = None,
    ):
        self.app = app
        self.name = name
        self.config = config or QueueConfig()
        self.runner = runner or EventLoopRunner()
        self._tasks: dict[str, Task] = {}
        self._repeatable: dict[str, RepeatableJob] = {}
        self._closed = False

    def task_name(self, job_name: str) -> str:
        return f"flowengine.{self.name}.{job_name}"

    def _default_attempts(self, job_name: str) -> int:
        if job_name.startswith(SEND_JOB_PREFIX):
            return self.config.send_attempts
        return self.config.attempts

    # === Handlers ===

    def register(self, job_name: str, handler: JobHandler, attempts: int | None = None) -> Task:
        """Bind ``handler`` to ``job_name`` as a Celery task on this queue."""
        attempts = max(1, attempts or self._default_attempts(job_name))
        runner = self.runner

        def run_job(task: Task, data: Any = None) -> Any:
            job = Job(
                id=task.request.id,
                name=job_name,
                data=data,
                attempt=task.request.retries + 1,
                attempts=attempts,
            )
            return to_jsonable_python(runner.run(handler(job)))

        task = self.app.task(
            run_job,
            name=self.task_name(job_name),
            base=JobTask,
            bind=True,
            shared=False,
            lazy=False,
            autoretry_for=(Exception,),
            max_retries=attempts - 1,
            retry_backoff=max(1, int(self.config.backoff_delay_s)),
            retry_jitter=False,
        )
        self._tasks[job_name] = task
        return task

    def registered(self) -> list[str]:
        return list(self._tasks)

    # === Adding jobs ===

    async def add(self, job_name: str, data: Any = None, job_id: str | None = None) -> AsyncResult:
        """
        Send a job to this queue. ``data`` must be JSON-serializable.

        In eager mode the job runs (retries included) before this returns.
        """
        if self._closed:
            raise RuntimeError(f"Queue '{self.name}' is closed")
        task = self._tasks.get(job_name)
        if task is None:
            raise LookupError(f"No handler registered for '{job_name}' on queue '{self.name}'")
        result = await asyncio.to_thread(
            task.apply_async, args=(data,), task_id=job_id, queue=self.name
        )
        logger.debug(f"Queue '{self.name}': added {job_name} ({result.id})")
        return result

    # === Repeatable jobs ===

    def schedule_key(self, job_name: str) -> str:
        return f"{self.name}:{job_name}"

    def add_repeatable(
        self,
        job_name: str,
        data: Any = None,
        pattern: str | None = None,
        every_s: float | None = None,
    ) -> RepeatableJob:
        """Schedule ``job_name`` by cron ``pattern`` or fixed ``every_s``, replacing any old one."""
        if (pattern is None) == (every_s is None):
            raise ValueError("Exactly one of pattern or every_s is required")
        schedule = cron_schedule(pattern) if pattern is not None else timedelta(seconds=every_s)

        self.app.conf.beat_schedule[self.schedule_key(job_name)] = {
            "task": self.task_name(job_name),
            "schedule": schedule,
            "args": (data,),
            "options": {"queue": self.name},
        }
        repeatable = RepeatableJob(job_name, data, pattern=pattern, every_s=every_s)
        self._repeatable[job_name] = repeatable
        cadence = f"cron '{pattern}'" if pattern else f"every {every_s}s"
        logger.info(f"Queue '{self.name}': scheduled {job_name} ({cadence})")
        return repeatable

    def remove_repeatable(self, job_name: str) -> bool:
        self.app.conf.beat_schedule.pop(self.schedule_key(job_name), None)
        return self._repeatable.pop(job_name, None) is not None

    def get_repeatable_jobs(self) -> list[RepeatableJob]:
        return list(self._repeatable.values())

    def close(self) -> None:
        """Stop accepting jobs and drop this queue's beat entries."""
        self._closed = True
        for job_name in list(self._repeatable):
            self.remove_repeatable(job_name)
