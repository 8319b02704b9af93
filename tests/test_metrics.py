from datetime import datetime, timedelta, timezone

from prometheus_client import CollectorRegistry

from opencost_exporter.metrics import ExportMetrics
from opencost_exporter.models import ExportRun, OutputFormat, RunStage

STARTED = datetime(2024, 1, 2, 3, 0, 0, tzinfo=timezone.utc)


def _run(succeeded: "bool", records: "int" = 0) -> "ExportRun":
    return ExportRun(
        run_id="abc",
        window="yesterday",
        aggregate=("namespace",),
        output_format=OutputFormat.CSV,
        started_at=STARTED,
        finished_at=STARTED + timedelta(seconds=4),
        stage=RunStage.SUCCEEDED if succeeded else RunStage.PUBLISHING,
        succeeded=succeeded,
        record_count=records,
        error="" if succeeded else "UploadError: 503",
    )


class TestExportMetrics:
    def test_successful_run_updates_gauges(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        metrics = ExportMetrics(registry=registry)

        metrics.observe_run(_run(True, records=42))

        assert registry.get_sample_value(
            "opencost_export_runs_total", {"outcome": "success"}
        ) == 1.0
        assert registry.get_sample_value("opencost_export_records") == 42.0
        assert registry.get_sample_value(
            "opencost_export_last_success_timestamp_seconds"
        ) == (STARTED + timedelta(seconds=4)).timestamp()
        assert registry.get_sample_value(
            "opencost_export_run_duration_seconds_sum"
        ) == 4.0

    def test_failed_run_leaves_success_gauges(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        metrics = ExportMetrics(registry=registry)
        metrics.observe_run(_run(True, records=5))

        metrics.observe_run(_run(False))

        assert registry.get_sample_value(
            "opencost_export_runs_total", {"outcome": "failure"}
        ) == 1.0
        # last good export is still reported
        assert registry.get_sample_value("opencost_export_records") == 5.0

    def test_stage_errors_and_skips(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        metrics = ExportMetrics(registry=registry)

        metrics.inc_stage_error("fetching", "TransportError")
        metrics.inc_stage_error("fetching", "TransportError")
        metrics.inc_run_skipped()

        assert registry.get_sample_value(
            "opencost_export_stage_errors_total",
            {"stage": "fetching", "error": "TransportError"},
        ) == 2.0
        assert registry.get_sample_value("opencost_export_runs_skipped_total") == 1.0
