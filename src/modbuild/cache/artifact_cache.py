"""Content-addressed, write-once artifact cache.

Layout::

    <cache_dir>/<key[:2]>/<key>/entry.json
    <cache_dir>/<key[:2]>/<key>/artifact

An entry is staged in a temporary sibling directory and published with a
single atomic rename. When two workers race on the same key the first rename
wins and the second writer discards its staging directory. Distinct keys never
touch the same paths, so no cross-key locking is needed.

Both successful and failed outcomes are stored; a failed entry carries the
step's diagnostic so an unchanged broken unit is not recompiled.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

from modbuild.build.build_step import BuildOutcome

logger = logging.getLogger(__name__)

ENTRY_FILE = "entry.json"
ARTIFACT_FILE = "artifact"
ENTRY_SCHEMA = 1


class CacheError(Exception):
    """Cache store or lookup failed (I/O or corrupt entry)."""

    pass


@dataclass(frozen=True)
class CacheEntry:
    """A published cache entry.

    Attributes:
        key: Cache key
        success: Outcome of the build step that produced the entry
        diagnostic: Verbatim step output
        node_id: Node the entry was built for
        instance_id: Instance label at store time (informational)
        created_at: Unix timestamp of the store
        directory: Entry directory on disk
        has_artifact: True if an artifact file was stored
    """

    key: str
    success: bool
    diagnostic: str
    node_id: str
    instance_id: str
    created_at: float
    directory: Path
    has_artifact: bool = False

    @property
    def artifact_path(self) -> Optional[Path]:
        return self.directory / ARTIFACT_FILE if self.has_artifact else None

    def size_bytes(self) -> int:
        """Total on-disk size of the entry."""
        return sum(p.stat().st_size for p in self.directory.iterdir() if p.is_file())

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema": ENTRY_SCHEMA,
            "key": self.key,
            "success": self.success,
            "diagnostic": self.diagnostic,
            "node_id": self.node_id,
            "instance_id": self.instance_id,
            "created_at": self.created_at,
            "has_artifact": self.has_artifact,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], directory: Path) -> "CacheEntry":
        return cls(
            key=data["key"],
            success=bool(data["success"]),
            diagnostic=data.get("diagnostic", ""),
            node_id=data.get("node_id", ""),
            instance_id=data.get("instance_id", ""),
            created_at=float(data.get("created_at", 0.0)),
            directory=directory,
            has_artifact=bool(data.get("has_artifact", False)),
        )


class ArtifactCache:
    """Directory-backed cache keyed by content-derived keys.

    Args:
        cache_dir: Root directory of the store (created on first write)
    """

    def __init__(self, cache_dir: Path):
        self.cache_dir = cache_dir

    def entry_dir(self, key: str) -> Path:
        """Directory holding the entry for a key."""
        if len(key) < 3 or not key.isalnum():
            raise CacheError(f"invalid cache key: {key!r}")
        return self.cache_dir / key[:2] / key

    def lookup(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for ``key`` or None when absent.

        Raises:
            CacheError: If the entry exists but cannot be read or is corrupt
        """
        directory = self.entry_dir(key)
        entry_file = directory / ENTRY_FILE
        if not entry_file.exists():
            return None
        try:
            with open(entry_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            entry = CacheEntry.from_dict(data, directory)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CacheError(f"unreadable cache entry {key[:12]}: {e}") from e
        if entry.key != key:
            raise CacheError(f"cache entry {key[:12]} records key {entry.key[:12]}")
        if entry.has_artifact and not (directory / ARTIFACT_FILE).is_file():
            raise CacheError(f"cache entry {key[:12]} is missing its artifact")
        return entry

    def store(self, key: str, outcome: BuildOutcome, node_id: str = "", instance_id: str = "") -> CacheEntry:
        """Publish an outcome under ``key``; a no-op if the key already exists.

        Returns:
            The published entry (the earlier writer's entry on a lost race)

        Raises:
            CacheError: If staging or publishing fails
        """
        final_dir = self.entry_dir(key)
        existing = self._existing(key)
        if existing is not None:
            return existing

        try:
            final_dir.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".{key[:12]}-", dir=final_dir.parent))
        except OSError as e:
            raise CacheError(f"cannot stage cache entry {key[:12]}: {e}") from e

        try:
            has_artifact = False
            if outcome.success and outcome.artifact_path is not None:
                shutil.copyfile(outcome.artifact_path, staging / ARTIFACT_FILE)
                has_artifact = True
            entry = CacheEntry(
                key=key,
                success=outcome.success,
                diagnostic=outcome.diagnostic,
                node_id=node_id,
                instance_id=instance_id,
                created_at=time.time(),
                directory=final_dir,
                has_artifact=has_artifact,
            )
            with open(staging / ENTRY_FILE, "w", encoding="utf-8") as f:
                json.dump(entry.to_dict(), f, indent=2)

            try:
                os.rename(staging, final_dir)
            except OSError:
                if not final_dir.exists():
                    raise
                winner = self._existing(key)
                if winner is None:
                    raise CacheError(f"cache entry {key[:12]} is occupied by an unreadable entry")
                logger.debug(f"Cache store race on {key[:12]}: keeping first writer")
                return winner
            logger.debug(f"Stored cache entry {key[:12]} for {instance_id or node_id}")
            return entry
        except OSError as e:
            raise CacheError(f"cannot store cache entry {key[:12]}: {e}") from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    def _existing(self, key: str) -> Optional[CacheEntry]:
        try:
            return self.lookup(key)
        except CacheError as e:
            logger.warning(f"Ignoring existing entry: {e}")
            return None

    def iter_entries(self) -> Iterator[CacheEntry]:
        """Yield every readable entry; unreadable ones are logged and skipped."""
        if not self.cache_dir.is_dir():
            return
        for shard in sorted(self.cache_dir.iterdir()):
            if not shard.is_dir() or len(shard.name) != 2:
                continue
            for directory in sorted(shard.iterdir()):
                if directory.name.startswith("."):
                    continue
                try:
                    entry = self.lookup(directory.name)
                except CacheError as e:
                    logger.warning(f"Skipping cache entry: {e}")
                    continue
                if entry is not None:
                    yield entry

    def stats(self) -> dict[str, int]:
        """Entry counts and total size."""
        entries = list(self.iter_entries())
        return {
            "entries": len(entries),
            "failures": sum(1 for e in entries if not e.success),
            "bytes": sum(e.size_bytes() for e in entries),
        }

    def remove(self, key: str) -> bool:
        """Delete one entry. Returns True if something was removed."""
        directory = self.entry_dir(key)
        if not directory.exists():
            return False
        shutil.rmtree(directory)
        return True

    def clear(self) -> int:
        """Delete every entry. Returns the number of entries removed."""
        removed = 0
        for entry in list(self.iter_entries()):
            if self.remove(entry.key):
                removed += 1
        logger.info(f"Cleared {removed} cache entries from {self.cache_dir}")
        return removed
