import enum
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

# header row of every tabular artifact, in output order
COLUMNS: "tuple[str, ...]" = (
    "WindowStart",
    "WindowEnd",
    "Name",
    "Cluster",
    "Namespace",
    "ControllerKind",
    "Controller",
    "Pod",
    "Container",
    "Node",
    "Team",
    "Project",
    "Environment",
    "CostCenter",
    "App",
    "CPUCoreHours",
    "CPUCoreRequestAverage",
    "CPUCoreUsageAverage",
    "RAMByteHours",
    "RAMBytesRequestAverage",
    "RAMBytesUsageAverage",
    "CPUCost",
    "RAMCost",
    "GPUCost",
    "PVCost",
    "NetworkCost",
    "LoadBalancerCost",
    "SharedCost",
    "ExternalCost",
    "TotalCost",
    "TotalEfficiency",
    "ExportTimestamp",
)

NUMERIC_COLUMNS: "frozenset[str]" = frozenset(COLUMNS[15:31])


class OutputFormat(str, enum.Enum):
    CSV = "csv"
    JSON = "json"
    PARQUET = "parquet"


class RunStage(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    FLATTENING = "flattening"
    WRITING = "writing"
    PUBLISHING = "publishing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def format_timestamp(ts: "datetime") -> "str":
    """
    renders a UTC datetime as RFC 3339 with a 'Z' suffix.
    """
    return ts.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass(frozen=True, slots=True)
class AllocationWindow:
    """
    AllocationWindow is the interval an allocation was
    aggregated over. Timestamps are kept exactly as the
    upstream API rendered them.
    """

    start: "str" = ""
    end: "str" = ""


@dataclass(frozen=True, slots=True)
class AllocationRecord:
    """
    AllocationRecord is one flattened row of allocation data.
    Numeric values are already rounded when the record is built.
    """

    window: "AllocationWindow"
    name: "str"
    export_timestamp: "datetime"

    cluster: "str" = ""
    namespace: "str" = ""
    controller_kind: "str" = ""
    controller: "str" = ""
    pod: "str" = ""
    container: "str" = ""
    node: "str" = ""

    team: "str" = ""
    project: "str" = ""
    environment: "str" = ""
    cost_center: "str" = ""
    app: "str" = ""

    cpu_core_hours: "float" = 0.0
    cpu_core_request_average: "float" = 0.0
    cpu_core_usage_average: "float" = 0.0
    ram_byte_hours: "float" = 0.0
    ram_bytes_request_average: "float" = 0.0
    ram_bytes_usage_average: "float" = 0.0

    cpu_cost: "float" = 0.0
    ram_cost: "float" = 0.0
    gpu_cost: "float" = 0.0
    pv_cost: "float" = 0.0
    network_cost: "float" = 0.0
    load_balancer_cost: "float" = 0.0
    shared_cost: "float" = 0.0
    external_cost: "float" = 0.0
    total_cost: "float" = 0.0
    total_efficiency: "float" = 0.0

    def as_row(self) -> "dict[str, str | float]":
        """
        returns the record keyed by output column, in header order.
        """
        return {
            "WindowStart": self.window.start,
            "WindowEnd": self.window.end,
            "Name": self.name,
            "Cluster": self.cluster,
            "Namespace": self.namespace,
            "ControllerKind": self.controller_kind,
            "Controller": self.controller,
            "Pod": self.pod,
            "Container": self.container,
            "Node": self.node,
            "Team": self.team,
            "Project": self.project,
            "Environment": self.environment,
            "CostCenter": self.cost_center,
            "App": self.app,
            "CPUCoreHours": self.cpu_core_hours,
            "CPUCoreRequestAverage": self.cpu_core_request_average,
            "CPUCoreUsageAverage": self.cpu_core_usage_average,
            "RAMByteHours": self.ram_byte_hours,
            "RAMBytesRequestAverage": self.ram_bytes_request_average,
            "RAMBytesUsageAverage": self.ram_bytes_usage_average,
            "CPUCost": self.cpu_cost,
            "RAMCost": self.ram_cost,
            "GPUCost": self.gpu_cost,
            "PVCost": self.pv_cost,
            "NetworkCost": self.network_cost,
            "LoadBalancerCost": self.load_balancer_cost,
            "SharedCost": self.shared_cost,
            "ExternalCost": self.external_cost,
            "TotalCost": self.total_cost,
            "TotalEfficiency": self.total_efficiency,
            "ExportTimestamp": format_timestamp(self.export_timestamp),
        }


@dataclass(frozen=True, slots=True)
class Artifact:
    """
    Artifact is a serialized export ready to be stored.
    """

    filename: "str"
    data: "bytes"
    content_type: "str"
    record_count: "int"

    def save(self, directory: "str | Path") -> "Path":
        """
        writes the artifact into directory. The content lands in a
        temporary file first and is renamed into place, so readers
        never observe a partial file.
        """
        target_dir = Path(directory)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / self.filename

        fd, tmp_name = tempfile.mkstemp(dir=target_dir, prefix=f".{self.filename}.")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(self.data)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return target


@dataclass(frozen=True, slots=True)
class ExportRun:
    """
    ExportRun is the immutable outcome of one
    fetch -> flatten -> write -> publish execution.
    """

    run_id: "str"
    window: "str"
    aggregate: "tuple[str, ...]"
    output_format: "OutputFormat"
    started_at: "datetime"
    finished_at: "datetime"
    # last stage reached; the failing stage when succeeded is False
    stage: "RunStage"
    succeeded: "bool"
    record_count: "int" = 0
    # blob path, local path, or "" when nothing was stored
    target: "str" = ""
    error: "str" = ""
    attempts: "dict[str, int]" = field(default_factory=dict)

    @property
    def duration_seconds(self) -> "float":
        return (self.finished_at - self.started_at).total_seconds()
