from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Optional


class LocalFileStore:
    """Object store over the local filesystem; paths are filesystem paths.

    `finalize` uses `os.replace`, which is atomic when both paths are on the
    same filesystem (the writer keeps temp files under the output prefix).
    """

    async def put(self, path: str, data: bytes, *, content_type: Optional[str] = None) -> None:
        await asyncio.to_thread(self._write, Path(path), data)

    async def get(self, path: str) -> bytes:
        return await asyncio.to_thread(Path(path).read_bytes)

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(Path(path).is_file)

    async def finalize(self, temp_path: str, final_path: str) -> None:
        await asyncio.to_thread(self._replace, temp_path, final_path)

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(Path(path).unlink, missing_ok=True)

    async def list(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self._list, prefix)

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def _replace(temp_path: str, final_path: str) -> None:
        Path(final_path).parent.mkdir(parents=True, exist_ok=True)
        os.replace(temp_path, final_path)
        temp_dir = Path(temp_path).parent
        try:
            temp_dir.rmdir()
        except OSError:
            pass  # not empty: other shards still in flight

    @staticmethod
    def _list(prefix: str) -> list[str]:
        if prefix.endswith(("/", os.sep)):
            base, stem = Path(prefix), ""
        else:
            base, stem = Path(prefix).parent, str(Path(prefix))
        if not base.is_dir():
            return []
        return sorted(
            str(p) for p in base.rglob("*") if p.is_file() and str(p).startswith(stem)
        )
