"""
Row-binary container.

Layout (all integers big-endian):

    magic "WSRB" | u8 version | u32 schema length | schema JSON | u32 record count
    then per record: u32 key length | key | per field: u8 present flag | value

Values: string as u32 length + UTF-8, long as i64, double as f64, boolean as u8.
"""

from __future__ import annotations

import io
import struct
from typing import Any, Sequence

from ..errors import MalformedRecord, MissingSchema, SchemaMismatch
from ..models import OutputFormat, Record
from .base import EncodedBlock
from .schema import RecordSchema, parse_payload

MAGIC = b"WSRB"
VERSION = 1
CONTENT_TYPE = "application/x-wsink-rows"

_U8 = struct.Struct(">B")
_U32 = struct.Struct(">I")
_I64 = struct.Struct(">q")
_F64 = struct.Struct(">d")


class RowBinaryEncoder:
    """Self-describing row container; the schema must be supplied."""

    format = OutputFormat.ROW_BINARY

    def __init__(self, schema: RecordSchema | None):
        if schema is None:
            raise MissingSchema("ROW_BINARY output requires a record schema (schema_path)")
        self.schema = schema

    def encode(self, records: Sequence[Record]) -> EncodedBlock:
        # Validate everything first so a bad record rejects the whole shard
        rows = [(r.key, self.schema.validate_row(parse_payload(r))) for r in records]

        buf = io.BytesIO()
        schema_json = self.schema.model_dump_json().encode("utf-8")
        buf.write(MAGIC)
        buf.write(_U8.pack(VERSION))
        buf.write(_U32.pack(len(schema_json)))
        buf.write(schema_json)
        buf.write(_U32.pack(len(rows)))
        for key, row in rows:
            buf.write(_U32.pack(len(key)))
            buf.write(key)
            for f in self.schema.fields:
                try:
                    _write_value(buf, f.type, row[f.name])
                except (struct.error, UnicodeEncodeError) as e:
                    raise SchemaMismatch(f"field {f.name!r} cannot be encoded: {e}") from e
        return EncodedBlock(data=buf.getvalue(), content_type=CONTENT_TYPE)


def _write_value(buf: io.BytesIO, ftype: str, value: Any) -> None:
    if value is None:
        buf.write(_U8.pack(0))
        return
    buf.write(_U8.pack(1))
    if ftype == "string":
        raw = value.encode("utf-8")
        buf.write(_U32.pack(len(raw)))
        buf.write(raw)
    elif ftype == "long":
        buf.write(_I64.pack(value))
    elif ftype == "double":
        buf.write(_F64.pack(value))
    else:
        buf.write(_U8.pack(1 if value else 0))


class _Reader:
    def __init__(self, data: bytes):
        self._view = memoryview(data)
        self._pos = 0

    def take(self, n: int) -> bytes:
        if self._pos + n > len(self._view):
            raise MalformedRecord("truncated row-binary block")
        chunk = self._view[self._pos : self._pos + n].tobytes()
        self._pos += n
        return chunk

    def unpack(self, s: struct.Struct):
        return s.unpack(self.take(s.size))[0]

    @property
    def exhausted(self) -> bool:
        return self._pos == len(self._view)


def decode_row_binary(data: bytes) -> tuple[RecordSchema, list[tuple[bytes, dict[str, Any]]]]:
    """Inverse of `RowBinaryEncoder.encode`: returns the embedded schema and (key, row) pairs."""
    r = _Reader(data)
    if r.take(len(MAGIC)) != MAGIC:
        raise MalformedRecord("not a row-binary block")
    version = r.unpack(_U8)
    if version != VERSION:
        raise MalformedRecord(f"unsupported row-binary version {version}")
    schema = RecordSchema.model_validate_json(r.take(r.unpack(_U32)))

    rows = []
    for _ in range(r.unpack(_U32)):
        key = r.take(r.unpack(_U32))
        row: dict[str, Any] = {}
        for f in schema.fields:
            if not r.unpack(_U8):
                row[f.name] = None
            elif f.type == "string":
                row[f.name] = r.take(r.unpack(_U32)).decode("utf-8")
            elif f.type == "long":
                row[f.name] = r.unpack(_I64)
            elif f.type == "double":
                row[f.name] = r.unpack(_F64)
            else:
                row[f.name] = bool(r.unpack(_U8))
        rows.append((key, row))
    if not r.exhausted:
        raise MalformedRecord("trailing bytes after last record")
    return schema, rows
