"""Purge command implementation for the artifact cache.

Lists cache entries with their sizes and deletes them (manual eviction). The
ledger is left in place, so the next plan reports purged instances as
``evicted`` rather than ``new``.
"""

import shutil
from pathlib import Path

from modbuild.cache.artifact_cache import ArtifactCache, CacheEntry
from modbuild.output import log, log_detail, log_error, log_success, log_warning


def format_size(size_bytes: int) -> str:
    """Format bytes as B/KB/MB/GB.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string (e.g., "95.1 MB")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"


def _describe(entry: CacheEntry, size_bytes: int) -> str:
    status = "ok" if entry.success else "failed"
    label = entry.instance_id or entry.node_id or "?"
    return f"{entry.key[:12]} {label} [{status}] ({format_size(size_bytes)})"


def purge_cache(cache_dir: Path, dry_run: bool) -> bool:
    """Main entry point for purge command.

    Args:
        cache_dir: Artifact cache directory
        dry_run: If True, show what would be deleted without deleting

    Returns:
        True if every entry was deleted (or would be, in dry-run mode)
    """
    cache = ArtifactCache(cache_dir)
    entries = list(cache.iter_entries())

    if not entries:
        log(f"No cache entries at {cache_dir}")
        return True

    sizes = {entry.key: entry.size_bytes() for entry in entries}
    total_size = sum(sizes.values())

    if dry_run:
        log(f"Dry run: showing what would be deleted from {cache_dir}")
    else:
        log(f"Purging {len(entries)} cache entries at {cache_dir}")

    deleted_count = 0
    failed_count = 0
    for entry in entries:
        description = _describe(entry, sizes[entry.key])
        if dry_run:
            log_detail(f"Would delete: {description}")
            continue
        try:
            if cache.remove(entry.key):
                log_detail(f"Deleted: {description}", verbose_only=True)
                deleted_count += 1
            else:
                log_warning(f"Already deleted: {description}")
        except (PermissionError, OSError) as e:
            log_error(f"Failed to delete {description}: {e}")
            failed_count += 1

    if dry_run:
        log(f"Total: {len(entries)} entries, {format_size(total_size)} would be freed")
        return True

    _remove_empty_shards(cache_dir)
    if deleted_count > 0:
        log_success(f"Purged {deleted_count} entries, freed {format_size(total_size)}")
    if failed_count > 0:
        log_error(f"Failed to delete {failed_count} entries")
    return failed_count == 0


def _remove_empty_shards(cache_dir: Path) -> None:
    for shard in cache_dir.iterdir():
        if shard.is_dir() and len(shard.name) == 2 and not any(shard.iterdir()):
            shutil.rmtree(shard, ignore_errors=True)
