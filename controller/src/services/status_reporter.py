"""
Report run, job and step status to external observers.

The reporter fans every update out to its sinks. A failing sink is
logged and skipped; it never affects the run being reported.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Type, TypeVar

import httpx
import redis.asyncio as redis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from controller.src.config import Settings, get_settings
from controller.src.models.db import Base, PipelineJob, PipelineRun, PipelineStep, RunEvent
from controller.src.models.run import JobExecution, OutputLine, Run, StatusUpdate, StepResult

logger = logging.getLogger(__name__)

STATUS_KEY = "kiln:status"
EVENTS_CHANNEL = "kiln:events"
LOGS_CHANNEL = "kiln:logs:{run_id}"

S = TypeVar("S", bound="StatusSink")

class StatusSink:
    name = "sink"

    async def publish(self, update: StatusUpdate):
        pass

    async def output(self, line: OutputLine):
        pass

    async def archive(self, run: Run):
        """Called once with the complete run when it reaches a terminal status."""
        pass

    async def close(self):
        pass

class MemorySink(StatusSink):
    """Keeps updates and output of the most recent runs in memory."""
    name = "memory"

    def __init__(self, max_runs: int = 500):
        self.max_runs = max_runs
        self._updates: "OrderedDict[str, List[StatusUpdate]]" = OrderedDict()
        self._lines: Dict[str, List[OutputLine]] = {}

    def _bucket(self, run_id: str) -> List[StatusUpdate]:
        if run_id not in self._updates:
            self._updates[run_id] = []
            self._lines[run_id] = []
            while len(self._updates) > self.max_runs:
                old, _ = self._updates.popitem(last=False)
                self._lines.pop(old, None)
        return self._updates[run_id]

    async def publish(self, update: StatusUpdate):
        self._bucket(update.run_id).append(update)

    async def output(self, line: OutputLine):
        self._bucket(line.run_id)
        self._lines[line.run_id].append(line)

    def history(self, run_id: str) -> List[StatusUpdate]:
        return list(self._updates.get(run_id, []))

    def lines(
        self,
        run_id: str,
        job_name: Optional[str] = None,
        step_name: Optional[str] = None,
    ) -> List[str]:
        return [
            line.line
            for line in self._lines.get(run_id, [])
            if (job_name is None or line.job_name == job_name)
            and (step_name is None or line.step_name == step_name)
        ]

class LogSink(StatusSink):
    name = "log"

    def __init__(self, echo_output: bool = False):
        self.echo_output = echo_output

    async def publish(self, update: StatusUpdate):
        where = update.run_id[:8]
        if update.job_name:
            where += f"/{update.job_name}"
        if update.step_name:
            where += f"/{update.step_name}"
        suffix = f" ({update.reason})" if update.reason else ""
        logger.info(f"[{where}] {update.status}{suffix}")

    async def output(self, line: OutputLine):
        if self.echo_output:
            logger.info(f"[{line.job_name}/{line.step_name}] {line.line}")

class DatabaseSink(StatusSink):
    """Records every update and archives finished runs with SQLAlchemy."""
    name = "database"

    def __init__(self, database_url: str, create_tables: bool = True):
        self.engine = create_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)
        if create_tables:
            Base.metadata.create_all(self.engine)

    async def publish(self, update: StatusUpdate):
        await asyncio.to_thread(self._record_event, update)

    async def archive(self, run: Run):
        await asyncio.to_thread(self._archive, run)

    async def close(self):
        self.engine.dispose()

    def _record_event(self, update: StatusUpdate):
        with self.SessionLocal() as session:
            session.add(RunEvent(
                run_id=update.run_id,
                payload=update.model_dump(mode="json", by_alias=True),
            ))
            session.commit()

    def _archive(self, run: Run):
        with self.SessionLocal() as session:
            existing = session.get(PipelineRun, run.id)
            if existing is not None:
                session.delete(existing)
                session.flush()

            record = PipelineRun(
                id=run.id,
                pipeline=run.pipeline,
                repository=run.event.repository,
                branch=run.event.branch,
                commit_sha=run.event.commit_sha,
                event_type=run.event.event_type.value,
                triggered_by=run.event.actor,
                status=run.status.value,
                reason=run.reason.value if run.reason else None,
                created_at=run.created_at,
                started_at=run.started_at,
                finished_at=run.finished_at,
            )
            for execution in run.jobs.values():
                record.jobs.append(self._job_record(execution))
            session.add(record)
            session.commit()
            logger.debug(f"Archived run {run.id}")

    def _job_record(self, execution: JobExecution) -> PipelineJob:
        job = PipelineJob(
            name=execution.name,
            status=execution.status.value,
            reason=execution.reason.value if execution.reason else None,
            runner=execution.runner,
            started_at=execution.started_at,
            finished_at=execution.finished_at,
        )
        for order, step in enumerate(execution.steps):
            job.steps.append(self._step_record(order, step))
        return job

    def _step_record(self, order: int, step: StepResult) -> PipelineStep:
        return PipelineStep(
            name=step.name,
            step_order=order,
            status=step.status.value,
            reason=step.reason.value if step.reason else None,
            exit_code=step.exit_code,
            duration=step.duration,
            logs=step.output,
            started_at=step.started_at,
            finished_at=step.finished_at,
        )

    def get_run(self, run_id: str) -> Optional[dict]:
        """An archived run in the shape of the API's run representation."""
        with self.SessionLocal() as session:
            run = session.get(PipelineRun, run_id)
            if run is None:
                return None
            return {
                "id": run.id,
                "pipeline": run.pipeline,
                "repository": run.repository,
                "branch": run.branch,
                "commit_sha": run.commit_sha,
                "event_type": run.event_type,
                "triggered_by": run.triggered_by,
                "status": run.status,
                "reason": run.reason,
                "created_at": run.created_at,
                "started_at": run.started_at,
                "finished_at": run.finished_at,
                "jobs": [
                    {
                        "name": job.name,
                        "status": job.status,
                        "reason": job.reason,
                        "runner": job.runner,
                        "started_at": job.started_at,
                        "finished_at": job.finished_at,
                        "steps": [
                            {
                                "name": s.name,
                                "status": s.status,
                                "exit_code": s.exit_code,
                                "reason": s.reason,
                                "duration": s.duration,
                                "started_at": s.started_at,
                                "finished_at": s.finished_at,
                            }
                            for s in job.steps
                        ],
                    }
                    for job in run.jobs
                ],
            }

class RedisSink(StatusSink):
    """Live run status in a Redis hash plus pub/sub channels for updates and output."""
    name = "redis"

    def __init__(self, redis_url: Optional[str] = None, client=None):
        self.client = client or redis.from_url(
            redis_url or get_settings().redis_url,
            decode_responses=True,
        )

    async def publish(self, update: StatusUpdate):
        payload = update.model_dump_json(by_alias=True)
        if update.job_name is None:
            await self.client.hset(STATUS_KEY, update.run_id, update.status)
        await self.client.publish(EVENTS_CHANNEL, payload)

    async def output(self, line: OutputLine):
        await self.client.publish(
            LOGS_CHANNEL.format(run_id=line.run_id),
            line.model_dump_json(by_alias=True),
        )

    async def close(self):
        await self.client.aclose()

class WebhookSink(StatusSink):
    """POSTs each status update as JSON to a callback URL."""
    name = "webhook"

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 5.0):
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def publish(self, update: StatusUpdate):
        response = await self.client.post(
            self.url,
            content=update.model_dump_json(by_alias=True),
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()

    async def close(self):
        await self.client.aclose()

class StatusReporter:

    def __init__(self, sinks: Optional[Sequence[StatusSink]] = None):
        self.sinks: List[StatusSink] = list(sinks or [])

    def get_sink(self, sink_type: Type[S]) -> Optional[S]:
        for sink in self.sinks:
            if isinstance(sink, sink_type):
                return sink
        return None

    async def publish(self, update: StatusUpdate):
        for sink in self.sinks:
            try:
                await sink.publish(update)
            except Exception as e:
                logger.error(f"Status sink '{sink.name}' failed for run {update.run_id}: {e}")

    async def run_changed(self, run: Run):
        await self.publish(StatusUpdate(
            run_id=run.id,
            status=run.status.value,
            reason=run.reason.value if run.reason else None,
        ))

    async def job_changed(self, run: Run, job: JobExecution):
        await self.publish(StatusUpdate(
            run_id=run.id,
            status=job.status.value,
            job_name=job.name,
            reason=job.reason.value if job.reason else None,
        ))

    async def step_changed(self, run: Run, job: JobExecution, step: StepResult):
        await self.publish(StatusUpdate(
            run_id=run.id,
            status=step.status.value,
            job_name=job.name,
            step_name=step.name,
            reason=step.reason.value if step.reason else None,
            exit_code=step.exit_code,
        ))

    async def output(self, run_id: str, job_name: str, step_name: str, line: str):
        chunk = OutputLine(run_id=run_id, job_name=job_name, step_name=step_name, line=line)
        for sink in self.sinks:
            try:
                await sink.output(chunk)
            except Exception as e:
                logger.error(f"Status sink '{sink.name}' dropped output for run {run_id}: {e}")

    async def archive(self, run: Run):
        for sink in self.sinks:
            try:
                await sink.archive(run)
            except Exception as e:
                logger.error(f"Status sink '{sink.name}' failed to archive run {run.id}: {e}")

    async def close(self):
        for sink in self.sinks:
            try:
                await sink.close()
            except Exception as e:
                logger.warning(f"Status sink '{sink.name}' did not close cleanly: {e}")

def build_sinks(settings: Optional[Settings] = None) -> List[StatusSink]:
    """Instantiate the sinks named in `status_sinks`."""
    settings = settings or get_settings()
    sinks: List[StatusSink] = []
    for name in settings.sink_names():
        if name == "memory":
            sinks.append(MemorySink())
        elif name == "log":
            sinks.append(LogSink())
        elif name == "database":
            sinks.append(DatabaseSink(settings.database_url))
        elif name == "redis":
            sinks.append(RedisSink(settings.redis_url))
        elif name == "webhook":
            if not settings.status_webhook_url:
                raise ValueError("status_webhook_url must be set to use the webhook sink")
            sinks.append(WebhookSink(settings.status_webhook_url))
        else:
            raise ValueError(f"Unknown status sink '{name}'")
    return sinks
