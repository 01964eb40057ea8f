"""
Columnar output via Parquet.

All records of the shard are buffered, validated against one schema, and
transposed into columns; Parquet writes row groups and a footer carrying the
column chunk offsets. Validation happens before anything is written, so a
non-conforming record rejects the whole shard.
"""

from __future__ import annotations

import json
from typing import Any, Optional, Sequence

import pyarrow as pa
import pyarrow.parquet as pq

from ..errors import SchemaMismatch
from ..models import OutputFormat, Record
from .base import EncodedBlock
from .schema import RecordSchema, parse_payload

CONTENT_TYPE = "application/vnd.apache.parquet"
KEY_COLUMN = "__key"
SCHEMA_METADATA_KEY = b"wsink.schema"


class ColumnarEncoder:
    """Parquet encoder; schema is configured or inferred from the shard's records."""

    format = OutputFormat.COLUMNAR_BINARY

    def __init__(
        self,
        schema: Optional[RecordSchema] = None,
        *,
        row_group_size: int = 10_000,
        compression: str = "snappy",
    ):
        self.schema = schema
        self.row_group_size = row_group_size
        self.compression = compression

    def encode(self, records: Sequence[Record]) -> EncodedBlock:
        payloads = [parse_payload(r) for r in records]
        schema = self.schema
        if schema is None and payloads:
            schema = RecordSchema.infer(payloads)

        columns: dict[str, list[Any]] = {KEY_COLUMN: [r.key for r in records]}
        fields = [pa.field(KEY_COLUMN, pa.binary(), nullable=False)]
        metadata = {}
        if schema is not None:
            rows = [schema.validate_row(p) for p in payloads]
            for f in schema.fields:
                columns[f.name] = [row[f.name] for row in rows]
            fields.extend(schema.to_arrow())
            metadata[SCHEMA_METADATA_KEY] = schema.model_dump_json().encode("utf-8")

        try:
            table = pa.Table.from_pydict(columns, schema=pa.schema(fields, metadata=metadata))
        except (pa.ArrowException, OverflowError) as e:
            raise SchemaMismatch(f"records do not fit the columnar schema: {e}") from e

        sink = pa.BufferOutputStream()
        try:
            pq.write_table(
                table,
                sink,
                row_group_size=self.row_group_size,
                compression=self.compression,
            )
        except pa.ArrowException as e:
            raise SchemaMismatch(f"shard could not be written as Parquet: {e}") from e
        return EncodedBlock(data=sink.getvalue().to_pybytes(), content_type=CONTENT_TYPE)


def decode_columnar(
    data: bytes,
) -> tuple[Optional[RecordSchema], list[tuple[bytes, dict[str, Any]]]]:
    """Read a Parquet block back into its schema and (key, row) pairs."""
    table = pq.read_table(pa.BufferReader(data))
    meta = table.schema.metadata or {}
    schema = None
    if SCHEMA_METADATA_KEY in meta:
        schema = RecordSchema.model_validate(json.loads(meta[SCHEMA_METADATA_KEY]))

    rows = []
    for row in table.to_pylist():
        key = row.pop(KEY_COLUMN)
        rows.append((key, row))
    return schema, rows
