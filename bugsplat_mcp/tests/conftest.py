"""
Shared fixtures for the attachment subsystem tests.

Every test gets its own cache directory under tmp_path; no test touches
the network.
"""
import io
import os
import zipfile
from pathlib import Path
from typing import Dict
from unittest.mock import AsyncMock

import pytest

from bugsplat_mcp.api_client import BugSplatAPIClient
from bugsplat_mcp.cache import COMPLETION_MARKER, attachment_dir
from bugsplat_mcp.config import Settings
from bugsplat_mcp.schemas import CrashInfo

DAY = 24 * 60 * 60


def make_bundle(files: Dict[str, bytes]) -> bytes:
    """Build an in-memory zip archive."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


def populate_cache(settings: Settings, crash_id: int, files: Dict[str, bytes]) -> Path:
    """Create a complete cached crash directory without downloading."""
    directory = attachment_dir(settings, crash_id)
    directory.mkdir(parents=True)
    for name, content in files.items():
        path = directory / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    (directory / COMPLETION_MARKER).touch()
    return directory


def set_age(directory: Path, seconds: float, now: float) -> None:
    """Backdate a cached crash directory (and its marker)."""
    stamp = now - seconds
    marker = directory / COMPLETION_MARKER
    if marker.exists():
        os.utime(marker, (stamp, stamp))
    os.utime(directory, (stamp, stamp))


@pytest.fixture
def settings(tmp_path):
    """Settings pointing the cache at a temporary directory."""
    return Settings(
        bugsplat_database="TestDatabase",
        bugsplat_client_id="test-client-id",
        bugsplat_client_secret="test-client-secret",
        mcp_attachment_cache_dir=tmp_path / "cache",
        mcp_log_dir=tmp_path / "logs",
    )


@pytest.fixture
def bundle():
    return make_bundle({
        "log.txt": b"hello world!",
        "config.ini": b"[app]\nversion=1.0.0\n",
    })


@pytest.fixture
def mock_client(settings, bundle):
    """BugSplat client whose network calls are AsyncMocks."""
    client = BugSplatAPIClient(settings)
    client.bundle = bundle
    client.get_crash = AsyncMock(side_effect=lambda database, crash_id: CrashInfo(
        id=crash_id,
        dumpfile=f"https://files.example.com/{crash_id}.zip",
        dumpfile_size=len(client.bundle),
    ))

    async def _download(url, destination, max_bytes):
        destination.write_bytes(client.bundle)
        return len(client.bundle)

    client.download_bundle = AsyncMock(side_effect=_download)
    return client
