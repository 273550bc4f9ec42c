"""
Attachment Cache Layout

Cache root:  <MCP_ATTACHMENT_CACHE_DIR>/<database>/
Crash dir:   <cache root>/<crash id>/<extracted files...>
Staging:     <cache root>/.<crash id>.<ms>.partial/  (download in progress)

A crash directory is a cache hit only when it holds the completion marker,
which the fetcher writes after a successful extraction. The reaper deletes
crash directories older than the retention window.
"""
import logging
import os
import shutil
import time
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from bugsplat_mcp.config import Settings
from bugsplat_mcp.errors import ConfigurationError
from bugsplat_mcp.schemas import ReapResult

logger = logging.getLogger(__name__)

COMPLETION_MARKER = ".complete"
STAGING_SUFFIX = ".partial"


def _validate_database(database: Optional[str]) -> str:
    if not database:
        raise ConfigurationError("BUGSPLAT_DATABASE environment variable is not defined")
    if database in (".", "..") or "/" in database or "\\" in database or "\x00" in database:
        raise ConfigurationError(f"Invalid BugSplat database name: {database!r}")
    return database


def cache_root(settings: Settings, database: Optional[str] = None) -> Path:
    """
    Per-database cache root. Pure path computation, no I/O.

    Args:
        settings: Application settings
        database: Database name (default: settings.bugsplat_database)

    Raises:
        ConfigurationError: If no valid database name is available
    """
    database = _validate_database(database or settings.bugsplat_database)
    base = Path(os.path.expanduser(str(settings.mcp_attachment_cache_dir)))
    return base / database


def attachment_dir(settings: Settings, crash_id: int, database: Optional[str] = None) -> Path:
    """Directory holding the extracted attachments of one crash."""
    if isinstance(crash_id, bool) or not isinstance(crash_id, int) or crash_id < 1:
        raise ValueError(f"Crash id must be a positive integer, got {crash_id!r}")
    return cache_root(settings, database) / str(crash_id)


def is_complete(directory: Path) -> bool:
    return (directory / COMPLETION_MARKER).is_file()


def staging_dir(target: Path, stamp: int) -> Path:
    """Hidden sibling of a crash directory that a download extracts into."""
    return target.parent / f".{target.name}.{stamp}{STAGING_SUFFIX}"


def is_staging(name: str) -> bool:
    return name.startswith(".") and name.endswith(STAGING_SUFFIX)


def list_cached_crash_dirs(settings: Settings, database: Optional[str] = None) -> List[str]:
    """Names of the crash entries under the cache root (empty if it doesn't exist)."""
    root = cache_root(settings, database)
    if not root.is_dir():
        return []
    return sorted(entry.name for entry in root.iterdir() if not is_staging(entry.name))


def _created_at(entry: Path) -> float:
    # The marker is written once, last; its mtime is when the crash was cached
    marker = entry / COMPLETION_MARKER
    try:
        return marker.stat().st_mtime
    except FileNotFoundError:
        return entry.stat().st_mtime


class CacheReaper:
    """Deletes cached crash directories older than the retention window."""

    def __init__(self, settings: Settings, database: Optional[str] = None):
        self.settings = settings
        self.root = cache_root(settings, database)

    def reap_expired(
        self,
        retention: Optional[timedelta] = None,
        now: Optional[float] = None,
    ) -> ReapResult:
        """
        Delete every entry under the cache root whose age exceeds retention.

        Entries that vanish during the scan (e.g. a concurrent reap) are
        skipped. Any other per-entry failure is logged and reported in
        ReapResult.failed; the pass continues.

        Staging directories belong to downloads in progress. They are never
        reported, and are only removed once older than the configured TTL
        (left behind by a killed process), whatever retention is passed.

        Args:
            retention: Retention window (default: MCP_ATTACHMENT_CACHE_TTL_DAYS)
            now: Current time as a UNIX timestamp (default: time.time())

        Returns:
            ReapResult listing deleted, kept and failed entry names
        """
        if retention is None:
            retention = timedelta(days=self.settings.mcp_attachment_cache_ttl_days)
        if now is None:
            now = time.time()
        cutoff = now - retention.total_seconds()
        staging_cutoff = now - timedelta(days=self.settings.mcp_attachment_cache_ttl_days).total_seconds()

        result = ReapResult()
        if not self.root.is_dir():
            return result

        for entry in sorted(self.root.iterdir()):
            if is_staging(entry.name):
                self._reap_stale_staging(entry, staging_cutoff)
                continue
            try:
                if not entry.is_dir():
                    continue
                if _created_at(entry) >= cutoff:
                    result.kept.append(entry.name)
                    continue
                shutil.rmtree(entry)
            except FileNotFoundError:
                logger.debug(f"Cache entry disappeared during reap: {entry.name}")
                continue
            except OSError as e:
                logger.warning(f"Failed to delete cache entry {entry}: {e}")
                result.failed.append(entry.name)
                continue
            logger.info(f"TTL cleanup: deleted {entry.name} (older than {retention.days} days)")
            result.deleted.append(entry.name)

        return result

    def _reap_stale_staging(self, entry: Path, cutoff: float) -> None:
        try:
            if entry.stat().st_mtime >= cutoff:
                return
            shutil.rmtree(entry)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning(f"Failed to delete abandoned download {entry}: {e}")
            return
        logger.info(f"TTL cleanup: deleted abandoned download {entry.name}")
