from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from opencost_exporter.errors import FlattenError
from opencost_exporter.flattener import flatten


class TestFlatten:
    def test_scenario_single_allocation(
        self, scenario_a_response: "dict", clock: "Any"
    ) -> "None":
        records = list(flatten(scenario_a_response, clock))

        assert len(records) == 1
        record = records[0]
        assert record.name == "podA"
        assert record.namespace == "ns1"
        assert record.cpu_cost == 1.234567
        assert record.total_cost == 1.5
        assert record.team == ""
        assert record.cluster == ""
        assert record.ram_cost == 0.0
        assert record.window.start == "2024-01-01T00:00:00Z"
        assert record.window.end == "2024-01-02T00:00:00Z"
        assert record.export_timestamp == clock()

    def test_record_count_matches_non_null_entries(
        self, make_allocation: "Any", clock: "Any"
    ) -> "None":
        response = {
            "code": 200,
            "data": [
                {
                    "a": make_allocation("a"),
                    "b": make_allocation("b"),
                    "scaled-down": None,
                },
                {
                    "a": make_allocation("a"),
                    "b": None,
                    "c": make_allocation("c"),
                },
            ],
        }

        records = flatten(response, clock)

        assert len(records) == 4
        assert [r.name for r in records] == ["a", "b", "a", "c"]

    def test_empty_window_yields_no_records(self, clock: "Any") -> "None":
        assert list(flatten({"code": 200, "data": [{}]}, clock)) == []

    def test_missing_data_yields_no_records(self, clock: "Any") -> "None":
        assert list(flatten({"code": 200}, clock)) == []
        assert list(flatten({"code": 200, "data": None}, clock)) == []

    def test_set_can_be_iterated_twice(
        self, make_allocation: "Any", clock: "Any"
    ) -> "None":
        records = flatten({"data": [{"a": make_allocation("a")}]}, clock)

        assert list(records) == list(records)
        assert len(list(records)) == 1

    def test_extracts_identity_and_known_labels(
        self, make_allocation: "Any", clock: "Any"
    ) -> "None":
        alloc = make_allocation("web")
        alloc["properties"].update(
            {
                "controllerKind": "deployment",
                "controller": "web",
                "pod": "web-7d9f",
                "container": "nginx",
                "node": "aks-nodepool1-0",
                "labels": {
                    "team": "platform",
                    "project": "shop",
                    "environment": "prod",
                    "cost-center": "cc-42",
                    "app": "web",
                    "unrelated": "ignored",
                },
            }
        )

        record = next(iter(flatten({"data": [{"ns1/web": alloc}]}, clock)))

        assert record.cluster == "aks-prod"
        assert record.controller_kind == "deployment"
        assert record.controller == "web"
        assert record.pod == "web-7d9f"
        assert record.container == "nginx"
        assert record.node == "aks-nodepool1-0"
        assert record.team == "platform"
        assert record.project == "shop"
        assert record.environment == "prod"
        assert record.cost_center == "cc-42"
        assert record.app == "web"
        assert "ignored" not in record.as_row().values()

    def test_accepts_sanitized_cost_center_label(
        self, make_allocation: "Any", clock: "Any"
    ) -> "None":
        alloc = make_allocation("a")
        alloc["properties"]["labels"] = {"cost_center": "cc-7"}

        record = next(iter(flatten({"data": [{"a": alloc}]}, clock)))

        assert record.cost_center == "cc-7"

    def test_name_falls_back_to_key(self, clock: "Any") -> "None":
        record = next(iter(flatten({"data": [{"ns1/podA": {"cpuCost": 1}}]}, clock)))

        assert record.name == "ns1/podA"
        assert record.window.start == ""

    def test_rounds_per_field_precision(
        self, make_allocation: "Any", clock: "Any"
    ) -> "None":
        alloc = make_allocation(
            "a",
            cpuCoreHours=1.123456789,
            ramByteHours=123.4567891,
            ramBytesRequestAverage=1048576.127,
            ramBytesUsageAverage=2.004,
            cpuCost=0.0000004,
            totalCost=3.14159265,
            totalEfficiency=0.123456,
        )

        record = next(iter(flatten({"data": [{"a": alloc}]}, clock)))

        assert record.cpu_core_hours == 1.123457
        assert record.ram_byte_hours == 123.456789
        assert record.ram_bytes_request_average == 1048576.13
        assert record.ram_bytes_usage_average == 2.0
        assert record.cpu_cost == 0.0
        assert record.total_cost == 3.141593
        assert record.total_efficiency == 0.1235

    def test_unusable_numbers_become_zero(
        self, make_allocation: "Any", clock: "Any"
    ) -> "None":
        alloc = make_allocation(
            "a", cpuCost="n/a", ramCost=None, gpuCost=True, pvCost="0.5"
        )

        record = next(iter(flatten({"data": [{"a": alloc}]}, clock)))

        assert record.cpu_cost == 0.0
        assert record.ram_cost == 0.0
        assert record.gpu_cost == 0.0
        assert record.pv_cost == 0.5
        assert record.network_cost == 0.0

    def test_tiny_negative_rounds_to_plain_zero(
        self, make_allocation: "Any", clock: "Any"
    ) -> "None":
        alloc = make_allocation("a", cpuCost=-1e-9, totalCost=1.0)

        record = next(iter(flatten({"data": [{"a": alloc}]}, clock)))

        assert record.cpu_cost == 0.0
        assert str(record.cpu_cost) == "0.0"

    def test_efficiency_zero_when_total_cost_zero(
        self, make_allocation: "Any", clock: "Any"
    ) -> "None":
        alloc = make_allocation("a", totalCost=0, totalEfficiency=0.8)

        record = next(iter(flatten({"data": [{"a": alloc}]}, clock)))

        assert record.total_efficiency == 0.0

    def test_efficiency_is_clamped(
        self, make_allocation: "Any", clock: "Any"
    ) -> "None":
        alloc = make_allocation("a", totalCost=2.0, totalEfficiency=1.7)

        record = next(iter(flatten({"data": [{"a": alloc}]}, clock)))

        assert record.total_efficiency == 1.0

    def test_total_cost_is_not_reconciled(
        self, make_allocation: "Any", clock: "Any"
    ) -> "None":
        alloc = make_allocation("a", cpuCost=1.0, ramCost=1.0, totalCost=10.0)

        record = next(iter(flatten({"data": [{"a": alloc}]}, clock)))

        assert record.total_cost == 10.0

    def test_stamps_each_record(self, make_allocation: "Any") -> "None":
        start = datetime(2024, 1, 2, tzinfo=timezone.utc)
        ticks = iter(start + timedelta(seconds=i) for i in range(10))
        response = {"data": [{"a": make_allocation("a"), "b": make_allocation("b")}]}

        first, second = flatten(response, lambda: next(ticks))

        assert second.export_timestamp - first.export_timestamp == timedelta(seconds=1)

    def test_default_clock_is_utc(self, make_allocation: "Any") -> "None":
        record = next(iter(flatten({"data": [{"a": make_allocation("a")}]})))

        assert record.export_timestamp.tzinfo == timezone.utc
        assert abs(datetime.now(timezone.utc) - record.export_timestamp) < timedelta(
            minutes=1
        )


class TestFlattenErrors:
    def test_data_must_be_a_list(self) -> "None":
        with pytest.raises(FlattenError):
            flatten({"code": 200, "data": {"a": {}}})

    def test_window_must_be_a_mapping(self) -> "None":
        with pytest.raises(FlattenError, match=r"data\[0\]"):
            list(flatten({"code": 200, "data": ["oops"]}))

    def test_allocation_must_be_a_mapping(self) -> "None":
        with pytest.raises(FlattenError, match="ns1/podA"):
            list(flatten({"code": 200, "data": [{"ns1/podA": 42}]}))

    def test_properties_must_be_a_mapping(self, make_allocation: "Any") -> "None":
        alloc = make_allocation("a")
        alloc["properties"] = ["namespace"]

        with pytest.raises(FlattenError, match="properties"):
            list(flatten({"data": [{"a": alloc}]}))

    def test_length_validates_like_iteration(self, make_allocation: "Any") -> "None":
        records = flatten({"data": [{"a": make_allocation("a")}, "oops"]})

        with pytest.raises(FlattenError, match=r"data\[1\]"):
            len(records)
