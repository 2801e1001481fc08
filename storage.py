"""Flat JSON document storage.

Every document lives under a key: ``entities/<collection>`` for reference data
and the undo stack, ``months/<YYYY-MM>`` for month ledgers. Writes to the same
key are serialized through one ``asyncio.Lock`` per key, and ``update`` holds
that lock across the whole read -> compute -> write cycle. Files are replaced
atomically, so a failed write leaves the previous content on disk.
"""

import asyncio
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from errors import StorageError, ValidationError


logger = logging.getLogger(__name__)

ENTITY_COLLECTIONS = ("bills", "incomes", "categories", "payment-sources", "undo")
MONTH_KEY_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

UNCHANGED = object()

T = TypeVar("T")


def entity_key(collection: str) -> str:
    if collection not in ENTITY_COLLECTIONS:
        raise ValueError(f"Unknown entity collection: {collection}")
    return f"entities/{collection}"


def month_key(month: str) -> str:
    if not MONTH_KEY_RE.match(month or ""):
        raise ValidationError(f"Invalid month '{month}', expected YYYY-MM", field="month")
    return f"months/{month}"


class JsonStorage:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _path(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def _read_file(self, path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError) as exc:
            logger.exception(f"storage_read_failed: path={path}")
            raise StorageError(f"Failed to read {path.name}", str(path)) from exc

    def _write_file(self, path: Path, value: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent), prefix=f".{path.stem}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(value, fh, indent=2, ensure_ascii=False)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as exc:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            logger.exception(f"storage_write_failed: path={path}")
            raise StorageError(f"Failed to write {path.name}", str(path)) from exc

    def _delete_file(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.exception(f"storage_delete_failed: path={path}")
            raise StorageError(f"Failed to delete {path.name}", str(path)) from exc
        return True

    async def read(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(self._read_file, self._path(key))

    async def write(self, key: str, value: Any) -> None:
        async with self._lock(key):
            await asyncio.to_thread(self._write_file, self._path(key), value)

    async def update(
        self, key: str, mutate: Callable[[Optional[Any]], tuple[Any, T]]
    ) -> T:
        """Run ``mutate`` on the current value while holding the key's lock.

        ``mutate`` receives the stored value (``None`` when absent) and returns
        ``(new_value, result)``. Returning ``UNCHANGED`` as the new value skips
        the write. If ``mutate`` raises, nothing is written.
        """
        async with self._lock(key):
            path = self._path(key)
            current = await asyncio.to_thread(self._read_file, path)
            new_value, result = mutate(current)
            if new_value is not UNCHANGED:
                await asyncio.to_thread(self._write_file, path, new_value)
            return result

    async def delete(
        self, key: str, check: Optional[Callable[[Optional[Any]], None]] = None
    ) -> bool:
        async with self._lock(key):
            path = self._path(key)
            if check is not None:
                check(await asyncio.to_thread(self._read_file, path))
            return await asyncio.to_thread(self._delete_file, path)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).exists)

    # Entity collections

    async def read_entity(self, collection: str) -> list[dict]:
        value = await self.read(entity_key(collection))
        return list(value or [])

    async def write_entity(self, collection: str, value: list[dict]) -> None:
        await self.write(entity_key(collection), value)

    async def update_entity(
        self, collection: str, mutate: Callable[[list[dict]], tuple[Any, T]]
    ) -> T:
        return await self.update(
            entity_key(collection), lambda current: mutate(list(current or []))
        )

    # Month ledgers

    async def read_month(self, month: str) -> Optional[dict]:
        return await self.read(month_key(month))

    async def write_month(self, month: str, ledger: dict) -> None:
        await self.write(month_key(month), ledger)

    async def update_month(
        self, month: str, mutate: Callable[[Optional[dict]], tuple[Any, T]]
    ) -> T:
        return await self.update(month_key(month), mutate)

    async def delete_month(
        self, month: str, check: Optional[Callable[[Optional[dict]], None]] = None
    ) -> bool:
        return await self.delete(month_key(month), check)

    async def month_exists(self, month: str) -> bool:
        return await self.exists(month_key(month))

    def _list_month_files(self) -> list[str]:
        months_dir = self.root / "months"
        if not months_dir.is_dir():
            return []
        return sorted(
            path.stem for path in months_dir.glob("*.json") if MONTH_KEY_RE.match(path.stem)
        )

    async def list_months(self) -> list[str]:
        return await asyncio.to_thread(self._list_month_files)
