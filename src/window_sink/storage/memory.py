from __future__ import annotations

import asyncio
from typing import Optional


class InMemoryObjectStore:
    """Dict-backed object store; finalize is atomic under the store lock."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self.content_types: dict[str, Optional[str]] = {}
        self._lock = asyncio.Lock()

    async def put(self, path: str, data: bytes, *, content_type: Optional[str] = None) -> None:
        async with self._lock:
            self._blobs[path] = bytes(data)
            self.content_types[path] = content_type

    async def get(self, path: str) -> bytes:
        async with self._lock:
            try:
                return self._blobs[path]
            except KeyError:
                raise FileNotFoundError(path) from None

    async def exists(self, path: str) -> bool:
        async with self._lock:
            return path in self._blobs

    async def finalize(self, temp_path: str, final_path: str) -> None:
        async with self._lock:
            if temp_path not in self._blobs:
                raise FileNotFoundError(temp_path)
            self._blobs[final_path] = self._blobs.pop(temp_path)
            self.content_types[final_path] = self.content_types.pop(temp_path, None)

    async def delete(self, path: str) -> None:
        async with self._lock:
            self._blobs.pop(path, None)
            self.content_types.pop(path, None)

    async def list(self, prefix: str = "") -> list[str]:
        async with self._lock:
            return sorted(p for p in self._blobs if p.startswith(prefix))
