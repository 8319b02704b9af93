import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from opencost_exporter.errors import ExportError
from opencost_exporter.fetcher import AllocationFetcher
from opencost_exporter.flattener import Clock, flatten, utc_now
from opencost_exporter.guard import RunGuard
from opencost_exporter.metrics import ExportMetrics
from opencost_exporter.models import ExportRun, OutputFormat, RunStage
from opencost_exporter.publisher import Publisher
from opencost_exporter.writer import Writer

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0


def _is_transient(exc: "BaseException") -> "bool":
    return isinstance(exc, ExportError) and exc.retryable


@dataclass(frozen=True)
class ExportSettings:
    """
    ExportSettings are the parameters shared by every run
    of one export target.
    """

    window: "str"
    aggregate: "tuple[str, ...]"
    output_format: "OutputFormat" = OutputFormat.CSV
    accumulate: "bool" = True
    include_idle: "bool" = False
    share_idle: "bool | None" = None
    filter_expr: "str" = ""
    # fixed artifact name; empty means a timestamped one per run
    filename: "str" = ""
    output_dir: "str" = ""
    max_attempts: "int" = DEFAULT_MAX_ATTEMPTS
    retry_backoff: "float" = DEFAULT_RETRY_BACKOFF_SECONDS


@dataclass
class _RunState:
    stage: "RunStage" = RunStage.IDLE
    record_count: "int" = 0
    target: "str" = ""
    attempts: "dict[str, int]" = field(default_factory=dict)


class ExportRunner:
    """
    ExportRunner executes fetch -> flatten -> write -> publish as
    one run. Stages run strictly one after another. Transient
    failures of the two network stages are retried a bounded
    number of times; every other failure ends the run at the
    stage where it happened.
    """

    def __init__(
        self,
        fetcher: "AllocationFetcher",
        writer: "Writer",
        publisher: "Publisher | None",
        metrics: "ExportMetrics",
        settings: "ExportSettings",
        clock: "Clock" = utc_now,
        sleep: "Callable[[float], Awaitable[Any]]" = asyncio.sleep,
    ) -> "None":
        self._fetcher = fetcher
        self._writer = writer
        # None disables the publishing stage
        self._publisher = publisher
        self._metrics = metrics
        self._settings = settings
        self._clock = clock
        self._sleep = sleep

    @property
    def metrics(self) -> "ExportMetrics":
        return self._metrics

    async def close(self) -> "None":
        await self._fetcher.close()
        if self._publisher is not None:
            await self._publisher.close()

    async def run_once(self) -> "ExportRun":
        """
        executes a single export run and returns its outcome.
        Pipeline failures are reported in the returned ExportRun;
        cancellation is recorded and then re-raised.
        """
        s = self._settings
        run_id = uuid.uuid4().hex[:12]
        started_at = self._clock()
        state = _RunState()
        log = logger.bind(run_id=run_id, window=s.window, format=s.output_format.value)
        log.info("run_started", aggregate=",".join(s.aggregate))

        try:
            await self._execute(state, started_at, run_id, log)
        except ExportError as exc:
            exc.stage = exc.stage or state.stage.value
            log.error("run_failed", stage=exc.stage, error=exc.kind, cause=exc.message)
            self._metrics.inc_stage_error(exc.stage, exc.kind)
            return self._finish(run_id, started_at, state, error=f"{exc.kind}: {exc.message}")
        except asyncio.CancelledError:
            log.warning("run_cancelled", stage=state.stage.value)
            self._metrics.inc_stage_error(state.stage.value, "Cancelled")
            self._finish(run_id, started_at, state, error="Cancelled: run was cancelled")
            raise
        except Exception as exc:
            log.exception("run_failed", stage=state.stage.value, error=type(exc).__name__)
            self._metrics.inc_stage_error(state.stage.value, type(exc).__name__)
            return self._finish(
                run_id, started_at, state, error=f"{type(exc).__name__}: {exc}"
            )

        state.stage = RunStage.SUCCEEDED
        run = self._finish(run_id, started_at, state)
        log.info(
            "run_succeeded",
            records=run.record_count,
            target=run.target,
            duration=round(run.duration_seconds, 3),
        )
        return run

    async def _execute(
        self,
        state: "_RunState",
        started_at: "datetime",
        run_id: "str",
        log: "Any",
    ) -> "None":
        s = self._settings

        state.stage = RunStage.FETCHING
        response = await self._with_retry(
            state,
            lambda: self._fetcher.fetch(
                s.window,
                s.aggregate,
                accumulate=s.accumulate,
                include_idle=s.include_idle,
                share_idle=s.share_idle,
                filter_expr=s.filter_expr,
            ),
            log,
        )

        state.stage = RunStage.FLATTENING
        records = list(flatten(response, self._clock))
        state.record_count = len(records)
        log.debug("records_flattened", records=state.record_count)

        state.stage = RunStage.WRITING
        artifact = self._writer.write(records, s.output_format, started_at, s.filename)
        if s.output_dir:
            state.target = str(artifact.save(Path(s.output_dir)))
            log.info("artifact_saved", path=state.target)

        if self._publisher is None:
            log.info("upload_skipped", filename=artifact.filename)
            return

        state.stage = RunStage.PUBLISHING
        publisher = self._publisher
        metadata = {
            "run_id": run_id,
            "window": s.window,
            "aggregate": ",".join(s.aggregate),
            "record_count": str(artifact.record_count),
        }
        state.target = await self._with_retry(
            state,
            lambda: publisher.publish(artifact, started_at, metadata),
            log,
        )

    async def _with_retry(
        self,
        state: "_RunState",
        call: "Callable[[], Awaitable[T]]",
        log: "Any",
    ) -> "T":
        stage = state.stage.value
        max_attempts = max(1, self._settings.max_attempts)

        async def _attempt() -> "T":
            try:
                return await call()
            except ExportError as exc:
                exc.stage = stage
                raise

        def _before(retry_state: "RetryCallState") -> "None":
            state.attempts[stage] = retry_state.attempt_number

        def _before_sleep(retry_state: "RetryCallState") -> "None":
            exc = retry_state.outcome.exception()
            self._metrics.inc_stage_error(stage, exc.kind)
            log.warning(
                "stage_attempt_failed",
                stage=stage,
                attempt=retry_state.attempt_number,
                max_attempts=max_attempts,
                error=exc.kind,
                cause=exc.message,
                retry_in=retry_state.next_action.sleep,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=self._settings.retry_backoff),
            sleep=self._sleep,
            before=_before,
            before_sleep=_before_sleep,
            reraise=True,
        )
        return await retrying(_attempt)

    def _finish(
        self,
        run_id: "str",
        started_at: "datetime",
        state: "_RunState",
        error: "str" = "",
    ) -> "ExportRun":
        s = self._settings
        run = ExportRun(
            run_id=run_id,
            window=s.window,
            aggregate=tuple(s.aggregate),
            output_format=s.output_format,
            started_at=started_at,
            finished_at=self._clock(),
            stage=state.stage,
            succeeded=not error,
            record_count=state.record_count,
            # a failed run never points at a stored artifact
            target="" if error else state.target,
            error=error,
            attempts=dict(state.attempts),
        )
        self._metrics.observe_run(run)
        return run


class Scheduler:
    """
    Scheduler triggers export runs on a fixed interval. A trigger
    that fires while the previous run for the same identity is
    still active is skipped, so runs never overlap on one target.
    """

    def __init__(
        self,
        runner: "ExportRunner",
        interval_seconds: "float",
        identity: "str",
        guard: "RunGuard | None" = None,
    ) -> "None":
        self._runner = runner
        self._interval = interval_seconds
        self._identity = identity
        self._guard = guard or RunGuard()
        self._stop_event: "asyncio.Event" = asyncio.Event()
        self._tasks: "set[asyncio.Task[ExportRun | None]]" = set()

    def stop(self) -> "None":
        """
        signals the scheduler loop to stop after the current tick.
        """
        self._stop_event.set()

    async def trigger(self) -> "ExportRun | None":
        """
        runs one export unless a run for this identity is already
        in flight, in which case None is returned.
        """
        with self._guard.hold(self._identity) as acquired:
            if not acquired:
                logger.warning("run_skipped", identity=self._identity)
                self._runner.metrics.inc_run_skipped()
                return None
            return await self._runner.run_once()

    async def run(self) -> "None":
        """
        runs the scheduling loop until stop() is called, then
        waits for the in-flight run to finish.
        """
        logger.info("scheduler_started", identity=self._identity, interval=self._interval)
        while not self._stop_event.is_set():
            # runs are started as tasks so a slow run cannot delay the
            # next tick; the guard decides whether that tick may run
            task = asyncio.create_task(self.trigger())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("scheduler_stopped", identity=self._identity)
