"""
Record storage for engine data.

The engine only needs keyed save/load/list of pydantic records, so any
datastore can sit behind ``RecordStore``. Two implementations ship here:
an in-memory store for tests and single-process use, and a file store
that keeps one JSON document per record.

File layout::

    {base_path}/
      {collection}/
        {key}.json
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel

from flowengine.utils.io import atomic_write

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def validate_key(key: str) -> None:
    """
    Validate a record key to prevent path traversal.

    Raises:
        ValueError: If key is empty or contains traversal or dangerous patterns
    """
    if not key or key.strip() == "":
        raise ValueError("Key cannot be empty")

    if "/" in key or "\\" in key:
        raise ValueError(f"Invalid key format: path separators not allowed in '{key}'")

    if ".." in key or key.startswith("."):
        raise ValueError(f"Invalid key format: path traversal detected in '{key}'")

    if len(key) > 1 and key[1] == ":":
        raise ValueError(f"Invalid key format: absolute paths not allowed in '{key}'")

    if "\x00" in key:
        raise ValueError("Invalid key format: null bytes not allowed")

    dangerous_chars = {"<", ">", "|", "&", "$", "`", "'", '"'}
    if any(char in key for char in dangerous_chars):
        raise ValueError(f"Invalid key format: contains dangerous characters in '{key}'")


class RecordStore(ABC, Generic[T]):
    """Keyed collection of pydantic records."""

    @abstractmethod
    async def save(self, key: str, record: T) -> None: ...

    @abstractmethod
    async def load(self, key: str) -> T | None: ...

    @abstractmethod
    async def list(self, predicate: Callable[[T], bool] | None = None) -> list[T]: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...


class InMemoryRecordStore(RecordStore[T]):
    """Dict-backed store. Records are copied on the way in and out."""

    def __init__(self) -> None:
        self._records: dict[str, T] = {}

    async def save(self, key: str, record: T) -> None:
        validate_key(key)
        self._records[key] = record.model_copy(deep=True)

    async def load(self, key: str) -> T | None:
        record = self._records.get(key)
        return record.model_copy(deep=True) if record is not None else None

    async def list(self, predicate: Callable[[T], bool] | None = None) -> list[T]:
        records = [r.model_copy(deep=True) for r in self._records.values()]
        if predicate is not None:
            records = [r for r in records if predicate(r)]
        return records

    async def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None


class FileRecordStore(RecordStore[T]):
    """One JSON file per record, written atomically off the event loop."""

    def __init__(self, base_path: str | Path, collection: str, model: type[T]):
        validate_key(collection)
        self.directory = Path(base_path) / collection
        self.model = model

    def _path(self, key: str) -> Path:
        validate_key(key)
        return self.directory / f"{key}.json"

    async def save(self, key: str, record: T) -> None:
        path = self._path(key)

        def _write():
            with atomic_write(path) as f:
                f.write(record.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
        logger.debug(f"Wrote {self.directory.name}/{key}.json")

    async def load(self, key: str) -> T | None:
        path = self._path(key)

        def _read():
            if not path.exists():
                return None
            return self.model.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def list(self, predicate: Callable[[T], bool] | None = None) -> list[T]:
        def _scan():
            records = []
            if not self.directory.exists():
                return records
            for path in sorted(self.directory.glob("*.json")):
                try:
                    record = self.model.model_validate_json(path.read_text(encoding="utf-8"))
                except Exception as e:
                    logger.warning(f"Failed to load {path}: {e}")
                    continue
                if predicate is None or predicate(record):
                    records.append(record)
            return records

        return await asyncio.to_thread(_scan)

    async def delete(self, key: str) -> bool:
        path = self._path(key)

        def _delete():
            if not path.exists():
                return False
            path.unlink()
            return True

        return await asyncio.to_thread(_delete)
