"""
Kiln command line - validate a pipeline definition or run it locally.

Exit codes:
    0 -> definition valid / run succeeded
    1 -> run failed or was cancelled
    2 -> definition invalid or the event matched no job
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from controller.src.bootstrap import build_scheduler
from controller.src.config import get_settings
from controller.src.errors import DefinitionInvalid, TriggerNotMatched
from controller.src.models.pipeline import EventType, PipelineDefinition, TriggerEvent
from controller.src.models.run import Run, RunStatus
from controller.src.services.definition_store import DefinitionStore
from controller.src.services.status_reporter import LogSink, MemorySink

logger = logging.getLogger(__name__)

def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

def describe(definition: PipelineDefinition) -> List[str]:
    lines = [f"Pipeline '{definition.name}': {len(definition.jobs)} job(s)"]
    for job in definition.jobs:
        needs = f" (needs: {', '.join(job.needs)})" if job.needs else ""
        lines.append(f"  {job.id}: {len(job.steps)} step(s), timeout {job.timeout:g}s{needs}")
        for step in job.steps:
            lines.append(f"    - {step.name}")
    return lines

def summarize(run: Run) -> List[str]:
    reason = f" ({run.reason.value})" if run.reason else ""
    lines = [f"Run {run.id[:8]} {run.status.value}{reason}"]
    for execution in run.jobs.values():
        job_reason = f" ({execution.reason.value})" if execution.reason else ""
        lines.append(f"  {execution.name}: {execution.status.value}{job_reason}")
        for step in execution.steps:
            code = "" if step.exit_code is None else f" exit {step.exit_code}"
            lines.append(f"    - {step.name}: {step.status.value}{code}")
    return lines

def cmd_validate(args: argparse.Namespace) -> int:
    try:
        definition = DefinitionStore().load_path(args.path)
    except DefinitionInvalid as e:
        print(f"[INVALID] {args.path}: {e}", file=sys.stderr)
        return 2

    for line in describe(definition):
        print(line)
    return 0

async def execute(args: argparse.Namespace) -> int:
    settings = get_settings()
    memory = MemorySink()
    scheduler = build_scheduler(settings, sinks=[memory, LogSink(echo_output=not args.quiet)])

    try:
        definition = scheduler.store.load_path(args.path)
        event = TriggerEvent(
            repository=args.repository,
            branch=args.branch,
            commit_sha=args.sha,
            event_type=EventType(args.event),
            actor=args.actor,
        )
        run_id = await scheduler.submit(event, definition)
        run = await scheduler.wait(run_id)
    except DefinitionInvalid as e:
        print(f"[INVALID] {args.path}: {e}", file=sys.stderr)
        return 2
    except TriggerNotMatched as e:
        print(f"[SKIPPED] {e}", file=sys.stderr)
        return 2
    finally:
        await scheduler.shutdown(timeout=settings.kill_grace_period * 2)

    for line in summarize(run):
        print(line)

    if run.status != RunStatus.SUCCEEDED:
        for execution in run.jobs.values():
            for step in execution.steps:
                if step.reason is not None and step.output:
                    print(f"--- {execution.name}/{step.name} output (tail) ---", file=sys.stderr)
                    print(step.output, file=sys.stderr)
        return 1
    return 0

def cmd_run(args: argparse.Namespace) -> int:
    try:
        return asyncio.run(execute(args))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 1

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kiln",
        description="Kiln build-pipeline orchestrator",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Parse and validate a pipeline definition")
    validate.add_argument("path", help="Definition file, or a directory containing one")
    validate.set_defaults(func=cmd_validate)

    run = subparsers.add_parser("run", help="Run a pipeline definition on this machine")
    run.add_argument("path", help="Definition file, or a directory containing one")
    run.add_argument("--repository", default="local")
    run.add_argument("--branch", default="main")
    run.add_argument("--sha", default="0" * 40, help="Commit SHA exposed as KILN_COMMIT_SHA")
    run.add_argument("--event", default=EventType.PUSH.value, choices=[e.value for e in EventType])
    run.add_argument("--actor", default=None)
    run.add_argument("--quiet", action="store_true", help="Do not echo step output")
    run.set_defaults(func=cmd_run)

    return parser

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(get_settings().log_level)
    return args.func(args)

if __name__ == "__main__":
    sys.exit(main())
