"""
Command-line interface for flowengine.

Usage:
    flowengine run workflow.json --input '{"key": "value"}'
    flowengine validate workflow.json
    flowengine cron-check "*/5 8-18 * * 1-5" --last-run 2025-01-06T09:00:00Z
    flowengine worker --storage ~/.flowengine/data
"""

import argparse
import asyncio
import json
import logging
import sys
import threading
from datetime import UTC, datetime
from pathlib import Path

from flowengine.config import EngineConfig
from flowengine.errors import TriggerParseError
from flowengine.graph.models import Workflow
from flowengine.graph.sorter import sort_nodes
from flowengine.observability.logging import configure_logging

logger = logging.getLogger(__name__)


def _load_workflow(path: str) -> Workflow:
    with open(path, encoding="utf-8") as f:
        return Workflow.model_validate(json.load(f))


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _build_llm(args: argparse.Namespace, config: EngineConfig):
    if args.no_llm:
        return None
    from flowengine.llm.litellm import LiteLLMProvider

    return LiteLLMProvider(model=args.model or config.model)


def _storage(args: argparse.Namespace, config: EngineConfig):
    from flowengine.storage.bundle import EngineStorage

    if args.storage == ":memory:":
        return EngineStorage.in_memory()
    path = Path(args.storage).expanduser() if args.storage else config.storage_path
    return EngineStorage.on_disk(path)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_run(args: argparse.Namespace) -> int:
    from flowengine.runtime.engine import Engine

    workflow = _load_workflow(args.workflow)
    initial_data = json.loads(args.input) if args.input else {}
    config = EngineConfig()

    async def _run():
        engine = Engine(config, storage=_storage(args, config), llm=_build_llm(args, config))
        try:
            return await engine.run_workflow(workflow, initial_data, user_id=args.user)
        finally:
            await engine.stop()

    execution = asyncio.run(_run())
    print(json.dumps(execution.model_dump(mode="json"), indent=2))
    return 0 if execution.status == "success" else 1


def cmd_validate(args: argparse.Namespace) -> int:
    from flowengine.errors import FlowEngineError

    workflow = _load_workflow(args.workflow)
    errors = workflow.validate_graph()
    if not errors:
        try:
            order = [n.id for n in sort_nodes(workflow.nodes, workflow.connections)]
        except FlowEngineError as e:
            errors.append(str(e))
    if errors:
        for error in errors:
            print(f"✗ {error}")
        return 1
    print(f"✓ {workflow.id}: {len(workflow.nodes)} nodes, order {' -> '.join(order)}")
    return 0


def cmd_cron_check(args: argparse.Namespace) -> int:
    from flowengine.triggers.cron import compute_next_run_at, should_run_now

    now = _parse_time(args.now) or datetime.now(UTC)
    try:
        due = should_run_now(args.expression, _parse_time(args.last_run), now)
    except TriggerParseError as e:
        print(f"✗ {e}")
        return 2
    next_run = compute_next_run_at(args.expression, now)
    print(
        json.dumps(
            {
                "due": due,
                "now": now.isoformat(),
                "next_run_at": next_run.isoformat() if next_run else None,
            }
        )
    )
    return 0 if due else 1


def cmd_worker(args: argparse.Namespace) -> int:
    from flowengine.runtime.engine import Engine

    config = EngineConfig()
    engine = Engine(config, storage=_storage(args, config), llm=_build_llm(args, config))

    # Celery owns the main thread (and its signal handling); job coroutines
    # run on this loop in the background.
    loop = asyncio.new_event_loop()
    loop_thread = threading.Thread(target=loop.run_forever, name="engine-loop", daemon=True)
    loop_thread.start()
    asyncio.run_coroutine_threadsafe(engine.start(), loop).result()
    try:
        worker = engine.celery_worker(beat=not args.no_beat, loglevel=args.log_level)
        logger.info("Worker running; press Ctrl+C to stop")
        worker.start()
    finally:
        logger.info("Shutting down")
        asyncio.run_coroutine_threadsafe(engine.stop(), loop).result()
        loop.call_soon_threadsafe(loop.stop)
        loop_thread.join()
        loop.close()
    return worker.exitcode or 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowengine",
        description="flowengine - run workflow graphs, triggers and evaluation jobs",
    )
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "json", "human"], help="Log output format"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Execute a workflow file once")
    run.add_argument("workflow", help="Path to a workflow JSON file")
    run.add_argument("--input", help="Initial context data as a JSON object")
    run.add_argument("--user", help="User id the run acts for")
    run.add_argument("--storage", default=":memory:", help="Storage directory (default: in memory)")
    run.add_argument("--model", help="LLM model for llm nodes and the eval judge")
    run.add_argument("--no-llm", action="store_true", help="Run without an LLM provider")
    run.set_defaults(func=cmd_run)

    validate = subparsers.add_parser("validate", help="Check a workflow file's graph")
    validate.add_argument("workflow", help="Path to a workflow JSON file")
    validate.set_defaults(func=cmd_validate)

    cron = subparsers.add_parser("cron-check", help="Decide whether a cron trigger is due")
    cron.add_argument("expression", help="Five-field cron expression")
    cron.add_argument("--last-run", help="ISO time of the trigger's last run")
    cron.add_argument("--now", help="ISO time to evaluate at (default: now)")
    cron.set_defaults(func=cmd_cron_check)

    worker = subparsers.add_parser("worker", help="Run queue workers and system schedules")
    worker.add_argument("--storage", help="Storage directory (default: from configuration)")
    worker.add_argument("--model", help="LLM model for llm nodes and batch jobs")
    worker.add_argument("--no-llm", action="store_true", help="Run without an LLM provider")
    worker.add_argument(
        "--no-beat", action="store_true", help="Do not run the beat scheduler in this worker"
    )
    worker.set_defaults(func=cmd_worker)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
