import asyncio
import signal
import sys

import structlog
from prometheus_client import start_http_server

from opencost_exporter.cli import parse_args
from opencost_exporter.config import Config
from opencost_exporter.fetcher import AllocationFetcher
from opencost_exporter.logging import setup_logging
from opencost_exporter.metrics import ExportMetrics
from opencost_exporter.models import ExportRun
from opencost_exporter.publisher import BlobPublisher, Publisher
from opencost_exporter.runner import ExportRunner, ExportSettings, Scheduler
from opencost_exporter.writer import Writer

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def build_runner(config: "Config", metrics: "ExportMetrics") -> "ExportRunner":
    publisher: "Publisher | None" = None
    if config.upload_enabled:
        publisher = BlobPublisher(
            account=config.storage_account,
            container=config.storage_container,
            prefix=config.storage_prefix,
            account_key=config.storage_key,
            connection_string=config.storage_connection_string,
            timeout=config.upload_timeout,
        )
        logger.info("upload_enabled", target=publisher.target)
    elif not config.skip_upload:
        raise SystemExit(
            "No storage configured. Set AZURE_STORAGE_ACCOUNT or "
            "AZURE_STORAGE_CONNECTION_STRING, or pass --skip-upload."
        )

    settings = ExportSettings(
        window=config.window,
        aggregate=tuple(config.aggregate_list),
        output_format=config.output_format,
        accumulate=config.accumulate,
        include_idle=config.include_idle,
        filename=config.filename,
        # without an upload the local file is the only output
        output_dir=config.output_dir or ("." if publisher is None else ""),
        max_attempts=config.max_attempts,
        retry_backoff=config.retry_backoff,
    )
    return ExportRunner(
        AllocationFetcher(config.opencost_url, timeout=config.fetch_timeout),
        Writer(),
        publisher,
        metrics,
        settings,
    )


def report(run: "ExportRun") -> "int":
    """
    prints the outcome of a one-shot run and returns the exit status.
    """
    if run.succeeded:
        print(f"exported {run.record_count} records to {run.target}")
        return 0

    print(f"export failed at {run.stage.value}: {run.error}", file=sys.stderr)
    return 1


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level)

    metrics = ExportMetrics()
    if config.listen_address:
        host, port = _parse_listen_address(config.listen_address)
        start_http_server(port, addr=host)
        logger.info("metrics_server_started", host=host, port=port)

    async def _run() -> "int":
        runner = build_runner(config, metrics)
        try:
            if config.schedule_interval <= 0:
                return report(await runner.run_once())

            scheduler = Scheduler(
                runner, config.schedule_interval, config.schedule_identity
            )
            loop = asyncio.get_running_loop()
            # for SIGINT and SIGTERM, let the in-flight run finish
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, scheduler.stop)
            await scheduler.run()
            return 0
        finally:
            logger.info("shutting_down")
            await runner.close()

    sys.exit(asyncio.run(_run()))


if __name__ == "__main__":
    main()
