import csv
import io
import json
from datetime import datetime
from typing import Protocol, Sequence

import structlog

from opencost_exporter.errors import DependencyUnavailable
from opencost_exporter.models import (
    COLUMNS,
    NUMERIC_COLUMNS,
    AllocationRecord,
    Artifact,
    OutputFormat,
)

logger = structlog.get_logger()

FILENAME_PREFIX = "opencost-allocation"


def artifact_filename(run_time: "datetime", fmt: "OutputFormat") -> "str":
    """
    builds opencost-allocation-<YYYYMMDD-HHMMSS>.<ext> for a run.
    """
    return f"{FILENAME_PREFIX}-{run_time.strftime('%Y%m%d-%H%M%S')}.{fmt.value}"


class Encoder(Protocol):
    """
    Encoder turns a complete set of records into bytes
    of one output format.
    """

    @property
    def content_type(self) -> "str": ...

    def encode(self, records: "Sequence[AllocationRecord]") -> "bytes": ...


class CsvEncoder:
    content_type = "text/csv; charset=utf-8"

    def encode(self, records: "Sequence[AllocationRecord]") -> "bytes":
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=COLUMNS, lineterminator="\n")
        writer.writeheader()
        for record in records:
            writer.writerow(record.as_row())
        return buf.getvalue().encode("utf-8")


class JsonEncoder:
    content_type = "application/json"

    def encode(self, records: "Sequence[AllocationRecord]") -> "bytes":
        rows = [record.as_row() for record in records]
        return json.dumps(rows, indent=2, ensure_ascii=False).encode("utf-8")


class ParquetEncoder:
    """
    ParquetEncoder goes through the CSV representation and
    converts it with pyarrow. pyarrow is only imported when
    a parquet export is requested.
    """

    content_type = "application/vnd.apache.parquet"

    def __init__(self, compression: "str" = "snappy") -> "None":
        self._compression = compression
        self._csv = CsvEncoder()

    def encode(self, records: "Sequence[AllocationRecord]") -> "bytes":
        try:
            import pyarrow as pa
            import pyarrow.csv as pa_csv
            import pyarrow.parquet as pq
        except ImportError as exc:
            raise DependencyUnavailable(
                f"parquet output requires pyarrow: {exc}"
            ) from exc

        column_types = {
            name: pa.float64() if name in NUMERIC_COLUMNS else pa.string()
            for name in COLUMNS
        }
        table = pa_csv.read_csv(
            pa.BufferReader(self._csv.encode(records)),
            parse_options=pa_csv.ParseOptions(newlines_in_values=True),
            convert_options=pa_csv.ConvertOptions(
                column_types=column_types,
                # empty strings are values, not nulls
                strings_can_be_null=False,
            ),
        )

        sink = pa.BufferOutputStream()
        pq.write_table(table, sink, compression=self._compression)
        return sink.getvalue().to_pybytes()


def default_encoders() -> "dict[OutputFormat, Encoder]":
    return {
        OutputFormat.CSV: CsvEncoder(),
        OutputFormat.JSON: JsonEncoder(),
        OutputFormat.PARQUET: ParquetEncoder(),
    }


class Writer:
    """
    Writer serializes a run's records with the encoder
    registered for the requested format.
    """

    def __init__(self, encoders: "dict[OutputFormat, Encoder] | None" = None) -> "None":
        self._encoders = encoders if encoders is not None else default_encoders()

    def write(
        self,
        records: "Sequence[AllocationRecord]",
        fmt: "OutputFormat",
        run_time: "datetime",
        filename: "str" = "",
    ) -> "Artifact":
        encoder = self._encoders.get(fmt)
        if encoder is None:
            raise DependencyUnavailable(f"no encoder registered for {fmt.value} output")

        data = encoder.encode(records)
        artifact = Artifact(
            filename=filename or artifact_filename(run_time, fmt),
            data=data,
            content_type=encoder.content_type,
            record_count=len(records),
        )
        logger.debug(
            "artifact_written",
            filename=artifact.filename,
            format=fmt.value,
            records=artifact.record_count,
            size=len(data),
        )
        return artifact
