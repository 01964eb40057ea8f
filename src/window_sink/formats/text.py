from __future__ import annotations

from typing import Sequence

from ..errors import MalformedRecord
from ..models import OutputFormat, Record
from .base import EncodedBlock

CONTENT_TYPE = "text/plain; charset=utf-8"


class TextEncoder:
    """One UTF-8 line per record; `key\\tvalue` when the record has a key."""

    format = OutputFormat.TEXT

    def encode(self, records: Sequence[Record]) -> EncodedBlock:
        lines = [self._line(r) for r in records]
        return EncodedBlock(data="".join(lines).encode("utf-8"), content_type=CONTENT_TYPE)

    @staticmethod
    def _line(record: Record) -> str:
        try:
            value = record.payload.decode("utf-8")
            key = record.key.decode("utf-8") if record.key else None
        except UnicodeDecodeError as e:
            raise MalformedRecord(f"record is not valid UTF-8: {e}") from e
        if "\n" in value or "\r" in value:
            raise MalformedRecord("text payloads must not contain line breaks")
        if key is not None and ("\n" in key or "\r" in key or "\t" in key):
            raise MalformedRecord("text keys must not contain tabs or line breaks")
        if key:
            return f"{key}\t{value}\n"
        return f"{value}\n"


def decode_text(data: bytes) -> list[str]:
    """Split a TEXT block on `\\n` only; other Unicode line breaks stay inside a line."""
    lines = data.decode("utf-8").split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines
