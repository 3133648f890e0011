import asyncio
import os
import tempfile
from pathlib import Path
from typing import Any, Callable

import orjson

from feedrelay.main.logging import get_logger

logger = get_logger(__name__)


class JsonFileStore:
    """One JSON document per collection under a directory.

    Writes go to a temp file in the same directory and are swapped in with
    ``os.replace`` so a crash never leaves a half-written collection behind.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self._locks: dict[str, asyncio.Lock] = {}

    def _path(self, name: str) -> Path:
        return self.directory / f"{name}.json"

    def _lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def _read_sync(self, name: str, default: Any) -> Any:
        path = self._path(name)
        if not path.exists():
            return default
        return orjson.loads(path.read_bytes())

    def _write_sync(self, name: str, data: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        payload = orjson.dumps(data, option=orjson.OPT_INDENT_2)

        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(payload)
            os.replace(tmp_path, self._path(name))
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    async def read(self, name: str, default: Any) -> Any:
        async with self._lock(name):
            return await asyncio.to_thread(self._read_sync, name, default)

    async def update(self, name: str, default: Any, mutate: Callable[[Any], Any]) -> Any:
        """Read-modify-write a collection under its lock.

        ``mutate`` receives the current document and returns
        ``(new_document, result)``; ``result`` is handed back to the caller.
        """
        async with self._lock(name):
            current = await asyncio.to_thread(self._read_sync, name, default)
            new_document, result = mutate(current)
            await asyncio.to_thread(self._write_sync, name, new_document)
            return result
