"""
Durable key-value stores for cache snapshots.
The cache only needs read/write/remove of a text blob by key; FileStore backs that
with one file per key and atomic tmp -> rename writes.
"""

import hashlib
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass

import trio

logger = logging.getLogger(__name__)


@dataclass
class StoreError(Exception):
    message: str
    key: str | None = None
    path: str | None = None

    def __str__(self) -> str:
        bits = [self.message]
        if self.key:
            bits.append(f"key={self.key}")
        if self.path:
            bits.append(f"path={self.path}")
        return " ".join(bits)


def clear_stale_tmp_files(store_dir: str, older_than: float):
    """
    Removes *.tmp files left behind by interrupted writes.
    Only files last modified before older_than (epoch seconds) are removed; younger
    ones may belong to a writer that is still running against the same directory.
    """
    logger.info("Clearing stale snapshot temp files...")
    for root, _, files in os.walk(store_dir):
        for f in files:
            if not f.endswith(".tmp"):
                continue
            path = os.path.join(root, f)
            try:
                if os.stat(path).st_mtime < older_than:
                    os.remove(path)
            except OSError:
                continue


class PersistentStore(ABC):
    @abstractmethod
    async def read(self, key: str) -> str | None:
        """Returns the blob stored under key, or None if there is none."""

    @abstractmethod
    async def write(self, key: str, blob: str) -> None:
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Removes key. Missing keys are not an error."""


class MemoryStore(PersistentStore):
    """Dict-backed store, for tests and for caches that only need in-process snapshots."""

    def __init__(self):
        self.blobs: dict[str, str] = {}

    async def read(self, key: str) -> str | None:
        return self.blobs.get(key)

    async def write(self, key: str, blob: str) -> None:
        self.blobs[key] = blob

    async def remove(self, key: str) -> None:
        self.blobs.pop(key, None)


class FileStore(PersistentStore):
    def __init__(self, store_dir: str):
        self.store_dir = store_dir

    def _get_blob_path(self, key: str) -> str:
        """One file per key, sharded by the first byte of the key hash."""
        key_hash = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return os.path.join(self.store_dir, key_hash[:2], f"{key_hash}.json")

    async def read(self, key: str) -> str | None:
        path = self._get_blob_path(key)
        try:
            return await trio.to_thread.run_sync(self._read_file, path)
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise StoreError(f"Failed to read blob: {exc}", key=key, path=path) from exc

    def _read_file(self, path: str) -> str:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    async def write(self, key: str, blob: str) -> None:
        path = self._get_blob_path(key)
        temp_path = f"{path}.{os.getpid()}.tmp"
        try:
            await trio.to_thread.run_sync(self._write_file, temp_path, blob)
            # Atomic Rename: readers see either the old or the new blob
            await trio.to_thread.run_sync(os.replace, temp_path, path)
        except OSError as exc:
            if os.path.exists(temp_path):
                await trio.to_thread.run_sync(os.remove, temp_path)
            raise StoreError(f"Failed to write blob: {exc}", key=key, path=path) from exc
        logger.debug(f"Stored {len(blob)} chars under {key} at {path}")

    def _write_file(self, path: str, blob: str):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(blob)

    async def remove(self, key: str) -> None:
        path = self._get_blob_path(key)
        try:
            await trio.to_thread.run_sync(os.remove, path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StoreError(f"Failed to remove blob: {exc}", key=key, path=path) from exc
