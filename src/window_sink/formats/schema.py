"""
Record schema for the schema-bearing formats.

Payloads of ROW_BINARY and COLUMNAR_BINARY records are JSON objects; the
schema fixes their field names and types.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal, Sequence, Union

import pyarrow as pa
from pydantic import BaseModel, ValidationError, field_validator

from ..errors import ConfigurationError, MalformedRecord, SchemaMismatch
from ..models import Record

FieldType = Literal["string", "long", "double", "boolean"]

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_ARROW_TYPES = {
    "string": pa.string(),
    "long": pa.int64(),
    "double": pa.float64(),
    "boolean": pa.bool_(),
}


class FieldSpec(BaseModel):
    name: str
    type: FieldType
    nullable: bool = True


class RecordSchema(BaseModel):
    """Ordered field list shared by every record of a shard."""

    name: str = "record"
    fields: list[FieldSpec]

    @field_validator("fields")
    def _unique_names(cls, v):
        if not v:
            raise ValueError("schema must declare at least one field")
        names = [f.name for f in v]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate field names in schema: {names}")
        return v

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def validate_row(self, row: dict[str, Any]) -> dict[str, Any]:
        """Return the row in schema order, or raise SchemaMismatch."""
        extra = set(row) - set(self.field_names)
        if extra:
            raise SchemaMismatch(f"fields not in schema {self.name!r}: {sorted(extra)}")
        out: dict[str, Any] = {}
        for f in self.fields:
            value = row.get(f.name)
            if value is None:
                if not f.nullable:
                    raise SchemaMismatch(f"field {f.name!r} is required")
                out[f.name] = None
                continue
            out[f.name] = _coerce(f, value)
        return out

    def to_arrow(self) -> pa.Schema:
        return pa.schema(
            [pa.field(f.name, _ARROW_TYPES[f.type], nullable=f.nullable) for f in self.fields],
            metadata={"schema_name": self.name},
        )

    @classmethod
    def infer(cls, rows: Sequence[dict[str, Any]], name: str = "record") -> "RecordSchema":
        """Derive a nullable schema for a shard (COLUMNAR_BINARY without a configured schema).

        Field names come from the first row; types are resolved from every
        non-null value of each field across all rows. Mixed long/double
        columns widen to double and all-null columns default to string.
        """
        if not rows or not rows[0]:
            raise SchemaMismatch("cannot infer a schema without fields in the first record")
        types: dict[str, set[str]] = {key: set() for key in rows[0]}
        for row in rows:
            for key, value in row.items():
                if value is None or key not in types:
                    continue
                types[key].add(_json_type(key, value))

        fields = []
        for key, seen in types.items():
            if not seen:
                t = "string"
            elif len(seen) == 1:
                (t,) = seen
            elif seen == {"long", "double"}:
                t = "double"
            else:
                raise SchemaMismatch(f"field {key!r} has conflicting types: {sorted(seen)}")
            fields.append(FieldSpec(name=key, type=t))
        return cls(name=name, fields=fields)


def _json_type(key: str, value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "long"
    if isinstance(value, float):
        return "double"
    if isinstance(value, str):
        return "string"
    raise SchemaMismatch(f"cannot infer a column type for field {key!r}")


def _coerce(f: FieldSpec, value: Any) -> Any:
    ok = {
        "string": isinstance(value, str),
        "long": isinstance(value, int) and not isinstance(value, bool),
        "double": isinstance(value, (int, float)) and not isinstance(value, bool),
        "boolean": isinstance(value, bool),
    }[f.type]
    if not ok:
        raise SchemaMismatch(
            f"field {f.name!r} expected {f.type}, got {type(value).__name__} ({value!r})"
        )
    if f.type == "long" and not INT64_MIN <= value <= INT64_MAX:
        raise SchemaMismatch(f"field {f.name!r} is out of the 64-bit range: {value}")
    if f.type == "double":
        try:
            return float(value)
        except OverflowError as e:
            raise SchemaMismatch(f"field {f.name!r} does not fit a double: {e}") from e
    if f.type == "string":
        try:
            value.encode("utf-8")
        except UnicodeEncodeError as e:
            raise MalformedRecord(f"field {f.name!r} is not valid UTF-8: {e}") from e
    return value


def parse_payload(record: Record) -> dict[str, Any]:
    """Decode a JSON-object payload."""
    try:
        row = json.loads(record.payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedRecord(f"payload is not JSON: {e}") from e
    except RecursionError as e:
        raise MalformedRecord("payload is nested too deeply") from e
    if not isinstance(row, dict):
        raise MalformedRecord(f"payload must be a JSON object, got {type(row).__name__}")
    return row


def load_schema(source: Union[str, Path, dict[str, Any]]) -> RecordSchema:
    """Load a schema from a JSON file path or an already-parsed document."""
    try:
        if isinstance(source, dict):
            return RecordSchema.model_validate(source)
        return RecordSchema.model_validate_json(Path(source).read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        raise ConfigurationError(f"invalid record schema {source!r}: {e}") from e
