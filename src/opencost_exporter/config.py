import os
from dataclasses import dataclass

from opencost_exporter.models import OutputFormat


@dataclass
class Config:
    # base URL of the OpenCost API, without the /allocation path
    opencost_url: "str" = "http://localhost:9003"
    # "7d", "yesterday", "month", or an explicit RFC 3339 range
    window: "str" = "yesterday"
    # comma separated aggregation dimensions
    aggregate: "str" = "namespace"
    accumulate: "bool" = True
    include_idle: "bool" = False
    output_format: "OutputFormat" = OutputFormat.CSV
    # fixed artifact name; empty means timestamped per run
    filename: "str" = ""
    output_dir: "str" = ""
    fetch_timeout: "float" = 120.0

    storage_account: "str" = ""
    storage_container: "str" = "opencost-exports"
    storage_prefix: "str" = "opencost-allocation"
    storage_key: "str" = ""
    storage_connection_string: "str" = ""
    upload_timeout: "float" = 300.0
    skip_upload: "bool" = False

    max_attempts: "int" = 3
    retry_backoff: "float" = 2.0

    # seconds between scheduled runs; 0 runs once and exits
    schedule_interval: "int" = 0
    # metrics listen address, e.g. ":9186"; empty disables it
    listen_address: "str" = ""
    log_level: "str" = "info"

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            opencost_url=os.environ.get("OPENCOST_URL", cls.opencost_url),
            storage_account=os.environ.get("AZURE_STORAGE_ACCOUNT", ""),
            storage_container=os.environ.get(
                "AZURE_STORAGE_CONTAINER", cls.storage_container
            ),
            storage_prefix=os.environ.get("EXPORT_BLOB_PREFIX", cls.storage_prefix),
            storage_key=os.environ.get("AZURE_STORAGE_KEY", ""),
            storage_connection_string=os.environ.get(
                "AZURE_STORAGE_CONNECTION_STRING", ""
            ),
        )

    @property
    def aggregate_list(self) -> "list[str]":
        return [d.strip() for d in self.aggregate.split(",") if d.strip()]

    @property
    def upload_enabled(self) -> "bool":
        if self.skip_upload:
            return False
        return bool(self.storage_account or self.storage_connection_string)

    @property
    def schedule_identity(self) -> "str":
        """
        identifies the export target; two runs with the same
        identity must never overlap.
        """
        account = self.storage_account or "local"
        return f"{account}/{self.storage_container}/{self.storage_prefix}"
