"""Output format encoders.

Each `OutputFormat` maps to one independent encoder; the pipeline selects
it once at construction time.
"""

from __future__ import annotations

from typing import Callable, Dict, Optional

from ..models import OutputFormat
from .base import EncodedBlock, Encoder
from .columnar import ColumnarEncoder, decode_columnar
from .row_binary import RowBinaryEncoder, decode_row_binary
from .schema import FieldSpec, RecordSchema, load_schema, parse_payload
from .text import TextEncoder, decode_text

EncoderFactory = Callable[[Optional[RecordSchema], int], Encoder]

_ENCODERS: Dict[OutputFormat, EncoderFactory] = {
    OutputFormat.TEXT: lambda schema, row_group_size: TextEncoder(),
    OutputFormat.ROW_BINARY: lambda schema, row_group_size: RowBinaryEncoder(schema),
    OutputFormat.COLUMNAR_BINARY: lambda schema, row_group_size: ColumnarEncoder(
        schema, row_group_size=row_group_size
    ),
}


def build_encoder(
    fmt: OutputFormat,
    schema: Optional[RecordSchema] = None,
    *,
    row_group_size: int = 10_000,
) -> Encoder:
    """Get the encoder for a format.

    Raises:
        MissingSchema: ROW_BINARY selected without a schema
    """
    if fmt not in _ENCODERS:
        raise KeyError(f"Unknown output format: {fmt}. Available: {[f.value for f in _ENCODERS]}")
    return _ENCODERS[fmt](schema, row_group_size)


__all__ = [
    "EncodedBlock",
    "Encoder",
    "TextEncoder",
    "RowBinaryEncoder",
    "ColumnarEncoder",
    "RecordSchema",
    "FieldSpec",
    "build_encoder",
    "load_schema",
    "parse_payload",
    "decode_text",
    "decode_row_binary",
    "decode_columnar",
]
