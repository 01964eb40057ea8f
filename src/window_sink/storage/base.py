from __future__ import annotations

from typing import Optional, Protocol


class ObjectStore(Protocol):
    """Blob store the sink commits shards into.

    `finalize` must make `final_path` appear atomically with the content of
    `temp_path` (rename, copy-then-delete, or a commit marker) and remove the
    temporary object. Overwriting an existing final object is allowed.
    """

    async def put(self, path: str, data: bytes, *, content_type: Optional[str] = None) -> None: ...

    async def get(self, path: str) -> bytes: ...

    async def exists(self, path: str) -> bool: ...

    async def finalize(self, temp_path: str, final_path: str) -> None: ...

    async def delete(self, path: str) -> None: ...

    async def list(self, prefix: str = "") -> list[str]: ...
