"""Key/value persistence partitions.

The store persists itself as a handful of named partitions (``changeLogStore``,
``snapshotNN``, ``backupSessionStore``, ...). Each partition is one JSON
value. ``set`` takes a mapping so several partitions that must move together
(the change log and its snapshot) are written by one call.

Backends:
- ``MemoryStorage``: for tests and ephemeral runs.
- ``JsonFileStorage``: one ``<key>.json`` file per partition in a directory.
  Writes go to a temp file first and are swapped in with ``os.replace``, so a
  crash mid-write leaves the previous value intact.

Every successful write or removal is published on a change feed:
listeners get ``{key: new_value}``, with ``None`` for removed keys.
"""

import contextlib
import inspect
import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

from tabvault.errors import PersistenceError

logger = logging.getLogger(__name__)

ChangeListener = Callable[[dict[str, Any]], Awaitable[None] | None]

_KEY_RE = re.compile(r"^[A-Za-z0-9_\-]+$")


def _as_keys(keys: str | Iterable[str] | None) -> list[str] | None:
    if keys is None:
        return None
    if isinstance(keys, str):
        return [keys]
    return list(keys)


class Storage(ABC):
    """Async key/value store of JSON values with a change feed."""

    def __init__(self):
        self._listeners: list[ChangeListener] = []

    @abstractmethod
    async def get(self, keys: str | Iterable[str] | None = None) -> dict[str, Any]:
        """Load the given keys (all keys when None). Missing keys are absent."""
        ...

    @abstractmethod
    async def _write(self, items: dict[str, str]) -> None:
        ...

    @abstractmethod
    async def _delete(self, keys: list[str]) -> list[str]:
        """Delete keys, returning the ones that existed."""
        ...

    @abstractmethod
    async def keys(self) -> list[str]:
        ...

    async def set(self, items: dict[str, Any]) -> None:
        """Write all ``items``. Raises PersistenceError on failure."""
        if not items:
            return
        for key in items:
            if not _KEY_RE.match(key):
                raise PersistenceError(f"Invalid storage key: {key!r}")
        try:
            encoded = {key: json.dumps(value) for key, value in items.items()}
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Can't serialize {list(items)}: {e}") from e

        await self._write(encoded)
        await self._notify({key: json.loads(text) for key, text in encoded.items()})

    async def remove(self, keys: str | Iterable[str]) -> None:
        removed = await self._delete(_as_keys(keys) or [])
        if removed:
            await self._notify({key: None for key in removed})

    async def clear(self) -> None:
        removed = await self._delete(await self.keys())
        if removed:
            await self._notify({key: None for key in removed})

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _notify(self, changes: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(changes)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # The write already landed; a broken listener doesn't undo it
                logger.error(f"storage change listener failed for {list(changes)}: {e}")


class MemoryStorage(Storage):
    """In-process storage. Values are kept as JSON text, like on disk."""

    def __init__(self):
        super().__init__()
        self._data: dict[str, str] = {}

    async def get(self, keys: str | Iterable[str] | None = None) -> dict[str, Any]:
        wanted = _as_keys(keys)
        if wanted is None:
            wanted = list(self._data)
        return {key: json.loads(self._data[key]) for key in wanted if key in self._data}

    async def _write(self, items: dict[str, str]) -> None:
        self._data.update(items)

    async def _delete(self, keys: list[str]) -> list[str]:
        return [key for key in keys if self._data.pop(key, None) is not None]

    async def keys(self) -> list[str]:
        return list(self._data)


class JsonFileStorage(Storage):
    """One JSON file per key under ``directory``."""

    SUFFIX = ".json"

    def __init__(self, directory: Path | str):
        super().__init__()
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}{self.SUFFIX}"

    async def get(self, keys: str | Iterable[str] | None = None) -> dict[str, Any]:
        wanted = _as_keys(keys)
        if wanted is None:
            wanted = await self.keys()

        result: dict[str, Any] = {}
        for key in wanted:
            path = self._path(key)
            if not path.exists():
                continue
            try:
                with open(path) as f:
                    result[key] = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise PersistenceError(f"Failed to read {path}: {e}") from e
        return result

    async def _write(self, items: dict[str, str]) -> None:
        for key, text in items.items():
            target = self._path(key)
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(text)
                os.replace(tmp_path, target)
            except OSError as e:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
                raise PersistenceError(f"Failed to write {target}: {e}") from e

    async def _delete(self, keys: list[str]) -> list[str]:
        removed = []
        for key in keys:
            path = self._path(key)
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise PersistenceError(f"Failed to remove {path}: {e}") from e
            removed.append(key)
        return removed

    async def keys(self) -> list[str]:
        return sorted(p.stem for p in self.directory.glob(f"*{self.SUFFIX}"))
