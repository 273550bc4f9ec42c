"""
Crash Attachment Retrieval

Downloads a crash's attachment bundle, extracts it into the local cache and
serves individual files back in byte ranges.

Flow:
    ensure_local (cache hit, or download + extract)
        -> read_range (byte range + pagination)
        -> fit_payload (truncate text / shrink images to the budget)

A crash is extracted into a hidden staging directory next to its final
location. The completion marker is written last and the staging directory
renamed into place, so a crash directory is either complete or absent.
"""
import asyncio
import contextlib
import logging
import shutil
import time
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Tuple

from bugsplat_mcp.api_client import BugSplatAPIClient
from bugsplat_mcp.cache import COMPLETION_MARKER, attachment_dir, is_complete, staging_dir
from bugsplat_mcp.config import Settings
from bugsplat_mcp.errors import (
    AttachmentFileNotFoundError,
    AttachmentTooLargeError,
    BundleExtractionError,
)
from bugsplat_mcp.pagination import PaginationInfo, read_range
from bugsplat_mcp.schemas import AttachmentListing
from bugsplat_mcp.transform import fit_payload_async, guess_media_type

logger = logging.getLogger(__name__)


def _remove_tree(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


def _extract_bundle(archive: Path, target: Path) -> None:
    try:
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(target)
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        raise BundleExtractionError(f"Attachment bundle is not a valid zip archive: {e}") from e
    except OSError as e:
        raise BundleExtractionError(f"Failed to extract attachment bundle: {e}") from e


class AttachmentFetcher:
    """
    Ensures a crash's attachments exist in the local cache.

    Concurrent ensure_local() calls for the same crash share one download;
    calls for different crashes are independent.
    """

    def __init__(self, settings: Settings, client: BugSplatAPIClient):
        self.settings = settings
        self.client = client
        self.database = settings.require_database()
        # Lock plus number of tasks holding or waiting on it, per crash
        self._locks: Dict[Tuple[str, int], Tuple[asyncio.Lock, int]] = {}

    @contextlib.asynccontextmanager
    async def _crash_lock(self, crash_id: int) -> AsyncIterator[None]:
        key = (self.database, crash_id)
        lock, users = self._locks.get(key) or (asyncio.Lock(), 0)
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users == 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    def directory(self, crash_id: int) -> Path:
        return attachment_dir(self.settings, crash_id, self.database)

    async def ensure_local(self, crash_id: int) -> Path:
        """
        Return the crash's attachment directory, downloading it on a miss.

        Raises:
            CrashNotFoundError: Crash unknown upstream
            AttachmentTooLargeError: Bundle exceeds the size ceiling
            BundleDownloadError: Network failure
            BundleExtractionError: Malformed archive
        """
        target = self.directory(crash_id)
        if is_complete(target):
            logger.debug(f"Attachment cache hit: crash {crash_id}")
            return target

        async with self._crash_lock(crash_id):
            # Another task may have finished the download while we waited
            if is_complete(target):
                return target
            if target.exists():
                logger.warning(f"Removing incomplete attachment directory {target}")
                _remove_tree(target)
            await self._download(crash_id, target)
            return target

    async def _download(self, crash_id: int, target: Path) -> None:
        logger.info(f"Attachment cache miss: crash {crash_id} in {self.database}")
        crash = await self.client.get_crash(self.database, crash_id)

        max_bytes = self.settings.max_bundle_bytes
        if crash.dumpfile_size > max_bytes:
            raise AttachmentTooLargeError("Attachments zip file is too large to download")
        if not crash.dumpfile:
            raise BundleExtractionError(f"Crash {crash_id} has no attachment bundle")

        timestamp = int(time.time() * 1000)
        staging = staging_dir(target, timestamp)
        staging.mkdir(parents=True, exist_ok=False)
        try:
            archive = staging / f"{crash_id}-{timestamp}.zip"
            await self.client.download_bundle(crash.dumpfile, archive, max_bytes)
            await asyncio.to_thread(_extract_bundle, archive, staging)
            archive.unlink()
            (staging / COMPLETION_MARKER).touch()
            staging.rename(target)
        except OSError as e:
            _remove_tree(staging)
            # Another process sharing the cache finished the same crash first
            if is_complete(target):
                logger.info(f"Attachments for crash {crash_id} were cached concurrently; using {target}")
                return
            raise BundleExtractionError(f"Failed to store attachments for crash {crash_id}: {e}") from e
        except BaseException:
            _remove_tree(staging)
            raise
        logger.info(f"Extracted attachments for crash {crash_id} to {target}")

    def list_files(self, directory: Path) -> List[str]:
        """Regular files in an attachment directory, as sorted relative names."""
        files = [
            path.relative_to(directory).as_posix()
            for path in directory.rglob("*")
            if path.is_file()
        ]
        return sorted(name for name in files if name != COMPLETION_MARKER)


@dataclass
class AttachmentChunk:
    """A budget-compliant slice of one attachment file."""
    file_name: str
    media_type: str
    data: bytes
    pagination: PaginationInfo


class AttachmentService:
    """list-attachments and get-attachment, independent of the MCP layer."""

    def __init__(
        self,
        settings: Settings,
        client: Optional[BugSplatAPIClient] = None,
        fetcher: Optional[AttachmentFetcher] = None,
    ):
        self.settings = settings
        self.database = settings.require_database()
        self.fetcher = fetcher or AttachmentFetcher(settings, client or BugSplatAPIClient(settings))

    async def list_attachments(self, crash_id: int) -> AttachmentListing:
        directory = await self.fetcher.ensure_local(crash_id)
        return AttachmentListing(
            database=self.database,
            crash_id=crash_id,
            files=self.fetcher.list_files(directory),
        )

    async def get_attachment(
        self,
        crash_id: int,
        file_name: str,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> AttachmentChunk:
        """
        Read one page of an attachment and fit it to the response budget.

        Args:
            crash_id: Crash id
            file_name: Exact name from list_attachments
            offset: Starting byte position
            limit: Max bytes (default and ceiling from settings)

        Raises:
            AttachmentFileNotFoundError: file_name isn't in the listing
            ImageTooLargeToFitError / UnsupportedAttachmentTypeError
        """
        directory = await self.fetcher.ensure_local(crash_id)
        files = self.fetcher.list_files(directory)
        if file_name not in files:
            raise AttachmentFileNotFoundError(
                f"Attachment file not found: {file_name} for crash ID {crash_id}."
            )

        limit = self.settings.clamp_chunk_limit(limit)
        chunk, pagination = await asyncio.to_thread(
            read_range, directory / file_name, max(0, offset), limit
        )
        media_type = guess_media_type(file_name)
        data = await fit_payload_async(
            chunk, media_type, file_name, self.settings.mcp_max_response_bytes
        )
        return AttachmentChunk(
            file_name=file_name,
            media_type=media_type,
            data=data,
            pagination=pagination,
        )
