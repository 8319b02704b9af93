import argparse

from opencost_exporter.config import Config
from opencost_exporter.models import OutputFormat


def parse_args(argv: "list[str] | None" = None) -> "Config":
    config = Config.from_env()

    parser = argparse.ArgumentParser(
        prog="opencost-exporter",
        description="Export OpenCost allocation data to Azure Blob Storage",
    )
    parser.add_argument(
        "--opencost.url",
        dest="opencost_url",
        default=config.opencost_url,
        help=f"OpenCost API base URL (default: {config.opencost_url}, env OPENCOST_URL)",
    )
    parser.add_argument(
        "--export.window",
        dest="window",
        default=config.window,
        help="Allocation window, e.g. 7d, yesterday, month (default: yesterday)",
    )
    parser.add_argument(
        "--export.aggregate",
        dest="aggregate",
        default=config.aggregate,
        help="Comma separated aggregation dimensions (default: namespace)",
    )
    parser.add_argument(
        "--export.format",
        dest="output_format",
        default=config.output_format.value,
        choices=[f.value for f in OutputFormat],
        help="Output format (default: csv)",
    )
    parser.add_argument(
        "--export.accumulate",
        dest="accumulate",
        action=argparse.BooleanOptionalAction,
        default=config.accumulate,
        help="Accumulate the window into a single set (default: true)",
    )
    parser.add_argument(
        "--export.include-idle",
        dest="include_idle",
        action=argparse.BooleanOptionalAction,
        default=config.include_idle,
        help="Include idle allocations (default: false)",
    )
    parser.add_argument(
        "--export.filename",
        dest="filename",
        default="",
        help="Fixed artifact filename instead of a timestamped one",
    )
    parser.add_argument(
        "--export.output-dir",
        dest="output_dir",
        default="",
        help="Also save the artifact into this local directory",
    )
    parser.add_argument(
        "--storage.account",
        dest="storage_account",
        default=config.storage_account,
        help="Azure Storage account name (env AZURE_STORAGE_ACCOUNT)",
    )
    parser.add_argument(
        "--storage.container",
        dest="storage_container",
        default=config.storage_container,
        help=f"Blob container (default: {config.storage_container})",
    )
    parser.add_argument(
        "--storage.prefix",
        dest="storage_prefix",
        default=config.storage_prefix,
        help=f"Blob path prefix (default: {config.storage_prefix})",
    )
    parser.add_argument(
        "--skip-upload",
        dest="skip_upload",
        action="store_true",
        help="Write the artifact without uploading it",
    )
    parser.add_argument(
        "--schedule.interval",
        dest="schedule_interval",
        type=int,
        default=0,
        help="Run every N seconds; 0 runs once and exits (default: 0)",
    )
    parser.add_argument(
        "--retry.max-attempts",
        dest="max_attempts",
        type=int,
        default=config.max_attempts,
        help="Attempts for fetching and publishing (default: 3)",
    )
    parser.add_argument(
        "--retry.backoff",
        dest="retry_backoff",
        type=float,
        default=config.retry_backoff,
        help="Base retry delay in seconds, doubled per attempt (default: 2)",
    )
    parser.add_argument(
        "--fetch.timeout",
        dest="fetch_timeout",
        type=float,
        default=config.fetch_timeout,
        help="OpenCost request timeout in seconds (default: 120)",
    )
    parser.add_argument(
        "--upload.timeout",
        dest="upload_timeout",
        type=float,
        default=config.upload_timeout,
        help="Blob upload timeout in seconds (default: 300)",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default="",
        help="Serve Prometheus metrics on this address, e.g. :9186",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )

    args = parser.parse_args(argv)
    if not [d for d in args.aggregate.split(",") if d.strip()]:
        parser.error("--export.aggregate must name at least one dimension")
    if not args.window.strip():
        parser.error("--export.window must not be empty")
    if args.max_attempts < 1:
        parser.error("--retry.max-attempts must be at least 1")

    for name, value in vars(args).items():
        setattr(config, name, value)
    config.output_format = OutputFormat(args.output_format)
    return config
