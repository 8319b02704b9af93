from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from opencost_exporter.models import ExportRun


class ExportMetrics:
    """
    applies ExportRun outcomes to Prometheus metrics.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._runs: "Counter" = Counter(
            "opencost_export_runs_total",
            "Total export runs by outcome",
            ["outcome"],
            registry=registry,
        )
        self._runs_skipped: "Counter" = Counter(
            "opencost_export_runs_skipped_total",
            "Scheduled runs skipped because a previous run was still active",
            registry=registry,
        )
        self._stage_errors: "Counter" = Counter(
            "opencost_export_stage_errors_total",
            "Total failed stage attempts by stage and error kind",
            ["stage", "error"],
            registry=registry,
        )
        self._run_duration: "Histogram" = Histogram(
            "opencost_export_run_duration_seconds",
            "Duration of export runs",
            registry=registry,
        )
        self._records: "Gauge" = Gauge(
            "opencost_export_records",
            "Number of allocation records in the last successful export",
            registry=registry,
        )
        self._last_success: "Gauge" = Gauge(
            "opencost_export_last_success_timestamp_seconds",
            "Unix timestamp of the last successful export",
            registry=registry,
        )

    def observe_run(self, run: "ExportRun") -> "None":
        """
        records the outcome of a finished run.
        """
        self._runs.labels(outcome="success" if run.succeeded else "failure").inc()
        self._run_duration.observe(run.duration_seconds)
        if run.succeeded:
            self._records.set(run.record_count)
            self._last_success.set(run.finished_at.timestamp())

    def inc_stage_error(self, stage: "str", error: "str") -> "None":
        self._stage_errors.labels(stage=stage, error=error).inc()

    def inc_run_skipped(self) -> "None":
        self._runs_skipped.inc()
