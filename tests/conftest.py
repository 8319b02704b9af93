from datetime import datetime, timezone
from typing import Any

import pytest
from prometheus_client import CollectorRegistry

FIXED_NOW = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def clock() -> "Any":
    return lambda: FIXED_NOW


@pytest.fixture()
def make_allocation() -> "Any":
    """
    factory for a minimal allocation object.
    """

    def _make(name: "str", namespace: "str" = "ns1", **fields: "Any") -> "dict[str, Any]":
        alloc: "dict[str, Any]" = {
            "window": {"start": "2024-01-01T00:00:00Z", "end": "2024-01-02T00:00:00Z"},
            "name": name,
            "properties": {"cluster": "aks-prod", "namespace": namespace},
        }
        alloc.update(fields)
        return alloc

    return _make


@pytest.fixture()
def scenario_a_response() -> "dict[str, Any]":
    return {
        "code": 200,
        "data": [
            {
                "ns1/podA": {
                    "window": {
                        "start": "2024-01-01T00:00:00Z",
                        "end": "2024-01-02T00:00:00Z",
                    },
                    "name": "podA",
                    "properties": {"namespace": "ns1"},
                    "cpuCost": 1.234567,
                    "totalCost": 1.5,
                }
            }
        ],
    }
