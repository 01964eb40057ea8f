from __future__ import annotations

import asyncio
import base64
import json
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from .config import get_settings, load_settings, parse_duration
from .dlq import DeadLetterQueue
from .errors import WindowSinkError
from .formats import decode_columnar, decode_row_binary, decode_text
from .pipeline import WindowedSink
from .sources import NdjsonFileSource
from .storage import LocalFileStore

app = typer.Typer(help="Windowed multi-format sink CLI")


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def _key_text(key: bytes) -> str:
    try:
        return key.decode("utf-8")
    except UnicodeDecodeError:
        return base64.b64encode(key).decode("ascii")


@app.command("run")
def run(
    input_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="NDJSON records"),
    output_prefix: Optional[str] = typer.Option(
        None, "--output-prefix", help="Output directory, ending in /"
    ),
    window_duration: Optional[str] = typer.Option(
        None, "--window-duration", help="e.g. 30s, 5m, 1h"
    ),
    allowed_lateness: Optional[str] = typer.Option(None, "--allowed-lateness"),
    output_format: Optional[str] = typer.Option(
        None, "--format", help="TEXT|ROW_BINARY|COLUMNAR_BINARY"
    ),
    filename_prefix: Optional[str] = typer.Option(None, "--filename-prefix"),
    max_shards: Optional[int] = typer.Option(
        None, "--max-shards", help="<= 0 lets parallelism decide"
    ),
    emit_empty_windows: Optional[bool] = typer.Option(
        None, "--emit-empty-windows/--skip-empty-windows"
    ),
    schema_path: Optional[Path] = typer.Option(None, "--schema", help="Record schema JSON"),
    dlq_path: Optional[Path] = typer.Option(None, "--dlq", help="Dead-letter NDJSON path"),
    max_out_of_orderness: str = typer.Option(
        "0s", "--max-out-of-orderness", help="Watermark lag behind the max event time"
    ),
    log_level: str = typer.Option("INFO", "--log-level"),
):
    """Window NDJSON records and write sharded files under the output prefix.

    Options left unset come from WSINK_* environment variables or `.env`.
    """
    _configure_logging(log_level)
    overrides = {
        k: v
        for k, v in dict(
            window_duration=window_duration,
            allowed_lateness=allowed_lateness,
            output_prefix=output_prefix,
            output_format=output_format,
            output_filename_prefix=filename_prefix,
            max_shards=max_shards,
            emit_empty_windows=emit_empty_windows,
            schema_path=schema_path,
            dlq_path=dlq_path,
        ).items()
        if v is not None
    }
    try:
        settings = load_settings(**overrides) if overrides else get_settings()
        lag = parse_duration(max_out_of_orderness)
        if isinstance(lag, str):
            raise typer.BadParameter(f"invalid duration: {max_out_of_orderness}")

        async def _main():
            sink = WindowedSink(settings, LocalFileStore())
            try:
                await sink.run(NdjsonFileSource(input_path, max_out_of_orderness=lag))
            finally:
                await sink.stop(drain=False)
            return sink.health()

        health = asyncio.run(_main())
    except WindowSinkError as e:
        logger.error(f"Sink failed: {e}")
        sys.exit(1)

    typer.echo(
        json.dumps(
            {
                "windows": health.windows,
                "dropped_late": health.dropped_late,
                "failed_windows": [str(w) for w in health.failed_windows],
            },
            indent=2,
        )
    )
    if health.failed_windows:
        sys.exit(2)
    logger.success(f"Wrote output under {settings.output_prefix}")


@app.command("inspect")
def inspect(
    path: Path = typer.Argument(..., exists=True, dir_okay=False),
):
    """Decode an output file (by extension) and print one JSON line per record."""
    data = path.read_bytes()
    suffix = path.suffix.lstrip(".")
    if suffix == "txt":
        for line in decode_text(data):
            typer.echo(line)
        return

    if suffix == "rows":
        schema, rows = decode_row_binary(data)
    elif suffix == "parquet":
        schema, rows = decode_columnar(data)
    else:
        logger.error(f"Unknown output file type: {path.name}")
        sys.exit(1)

    if schema is not None:
        logger.info(f"schema {schema.name}: {', '.join(schema.field_names)}")
    for key, row in rows:
        typer.echo(json.dumps({"key": _key_text(key), **row}, default=str))


@app.command("dlq")
def dlq(
    path: Path = typer.Argument(..., help="Dead-letter NDJSON path"),
    limit: int = typer.Option(100, "--limit"),
):
    """Summarize windows flagged for manual inspection."""
    recs = asyncio.run(DeadLetterQueue(path, mkdirs=False).replay(limit))
    for r in recs:
        typer.echo(
            json.dumps(
                {
                    "window": str(r.window),
                    "records": len(r.records),
                    "error": r.error,
                    "flagged_at": r.flagged_at.isoformat() if r.flagged_at else None,
                }
            )
        )


if __name__ == "__main__":
    app()
