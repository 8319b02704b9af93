import math
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Mapping

from opencost_exporter.errors import FlattenError
from opencost_exporter.models import AllocationRecord, AllocationWindow

Clock = Callable[[], datetime]

# decimal places applied at extraction time
COST_PRECISION = 6
USAGE_PRECISION = 6
BYTES_PRECISION = 2
RATIO_PRECISION = 4

# record attribute -> (API field, precision)
USAGE_FIELDS: "dict[str, tuple[str, int]]" = {
    "cpu_core_hours": ("cpuCoreHours", USAGE_PRECISION),
    "cpu_core_request_average": ("cpuCoreRequestAverage", USAGE_PRECISION),
    "cpu_core_usage_average": ("cpuCoreUsageAverage", USAGE_PRECISION),
    "ram_byte_hours": ("ramByteHours", USAGE_PRECISION),
    "ram_bytes_request_average": ("ramBytesRequestAverage", BYTES_PRECISION),
    "ram_bytes_usage_average": ("ramBytesUsageAverage", BYTES_PRECISION),
}

COST_FIELDS: "dict[str, str]" = {
    "cpu_cost": "cpuCost",
    "ram_cost": "ramCost",
    "gpu_cost": "gpuCost",
    "pv_cost": "pvCost",
    "network_cost": "networkCost",
    "load_balancer_cost": "loadBalancerCost",
    "shared_cost": "sharedCost",
    "external_cost": "externalCost",
    "total_cost": "totalCost",
}

IDENTITY_FIELDS: "dict[str, str]" = {
    "cluster": "cluster",
    "namespace": "namespace",
    "controller_kind": "controllerKind",
    "controller": "controller",
    "pod": "pod",
    "container": "container",
    "node": "node",
}

# only these labels are exported; OpenCost may hand back label
# names sanitized to underscores, so both spellings are accepted
LABEL_FIELDS: "dict[str, tuple[str, ...]]" = {
    "team": ("team",),
    "project": ("project",),
    "environment": ("environment",),
    "cost_center": ("cost-center", "cost_center"),
    "app": ("app",),
}


def utc_now() -> "datetime":
    return datetime.now(timezone.utc)


def _number(value: "Any", precision: "int") -> "float":
    """
    converts an upstream value into a rounded float. Anything
    missing or unusable becomes 0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    # adding 0.0 turns a rounded -0.0 into 0.0
    return round(number, precision) + 0.0


def _text(value: "Any") -> "str":
    if value is None:
        return ""
    return str(value)


def _mapping(value: "Any", what: "str") -> "Mapping[str, Any]":
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise FlattenError(f"{what} must be an object, got {type(value).__name__}")
    return value


def to_record(key: "str", alloc: "Mapping[str, Any]", stamp: "datetime") -> "AllocationRecord":
    """
    converts one decoded allocation object into an AllocationRecord.
    """
    where = f"allocation {key!r}"
    window = _mapping(alloc.get("window"), f"{where} window")
    properties = _mapping(alloc.get("properties"), f"{where} properties")
    labels = _mapping(properties.get("labels"), f"{where} labels")

    values: "dict[str, Any]" = {
        attr: _text(properties.get(api_name))
        for attr, api_name in IDENTITY_FIELDS.items()
    }
    for attr, names in LABEL_FIELDS.items():
        values[attr] = next(
            (_text(labels[n]) for n in names if labels.get(n) is not None), ""
        )
    for attr, (api_name, precision) in USAGE_FIELDS.items():
        values[attr] = _number(alloc.get(api_name), precision)
    for attr, api_name in COST_FIELDS.items():
        values[attr] = _number(alloc.get(api_name), COST_PRECISION)

    efficiency = 0.0
    if values["total_cost"] != 0:
        efficiency = min(1.0, max(0.0, _number(alloc.get("totalEfficiency"), RATIO_PRECISION)))

    return AllocationRecord(
        window=AllocationWindow(
            start=_text(window.get("start")),
            end=_text(window.get("end")),
        ),
        name=_text(alloc.get("name")) or key,
        export_timestamp=stamp,
        total_efficiency=efficiency,
        **values,
    )


class AllocationSet:
    """
    AllocationSet is a lazy view over the windows of an allocation
    response. Each iteration walks the response again, so the set
    can be consumed more than once.
    """

    def __init__(self, windows: "list[Any]", clock: "Clock" = utc_now) -> "None":
        self._windows = windows
        self._clock = clock

    def _entries(self) -> "Iterator[tuple[str, Mapping[str, Any]]]":
        for index, window in enumerate(self._windows):
            if not isinstance(window, Mapping):
                raise FlattenError(
                    f"data[{index}] must be an object, got {type(window).__name__}"
                )
            for key, alloc in window.items():
                # resources with nothing allocated in this window come back as null
                if alloc is None:
                    continue
                if not isinstance(alloc, Mapping):
                    raise FlattenError(
                        f"data[{index}][{key!r}] must be an object, "
                        f"got {type(alloc).__name__}"
                    )
                yield str(key), alloc

    def __iter__(self) -> "Iterator[AllocationRecord]":
        for key, alloc in self._entries():
            yield to_record(key, alloc, self._clock())

    def __len__(self) -> "int":
        return sum(1 for _ in self._entries())


def flatten(response: "Mapping[str, Any]", clock: "Clock" = utc_now) -> "AllocationSet":
    """
    validates the top level of an allocation response and returns
    its records as a restartable AllocationSet.
    """
    if not isinstance(response, Mapping):
        raise FlattenError(f"response must be an object, got {type(response).__name__}")
    data = response.get("data")
    if data is None:
        return AllocationSet([], clock)
    if not isinstance(data, list):
        raise FlattenError(f"data must be a list, got {type(data).__name__}")
    return AllocationSet(data, clock)
