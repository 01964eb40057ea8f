from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

from ..models import OutputFormat, Record


@dataclass(frozen=True)
class EncodedBlock:
    data: bytes
    content_type: str


class Encoder(Protocol):
    """Serializes the ordered records of one shard into a single byte block.

    Encoders are independent variants selected by `OutputFormat`; they share
    nothing beyond this contract. Errors raised are `DataError`s and are not
    retryable for the same input.
    """

    format: OutputFormat

    def encode(self, records: Sequence[Record]) -> EncodedBlock: ...
