"""
API Client for BugSplat

Thin httpx wrapper around the two BugSplat calls the attachment subsystem
needs: looking up a crash row and downloading its attachment bundle.

Authentication uses OAuth client credentials (BUGSPLAT_CLIENT_ID /
BUGSPLAT_CLIENT_SECRET). The access token is requested lazily and cached
on the instance.
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from bugsplat_mcp.config import Settings
from bugsplat_mcp.errors import (
    AttachmentTooLargeError,
    BundleDownloadError,
    ConfigurationError,
    CrashNotFoundError,
)
from bugsplat_mcp.schemas import CrashInfo

logger = logging.getLogger(__name__)


class BugSplatAPIClient:
    """
    HTTP client for the BugSplat REST API.
    """

    def __init__(
        self,
        settings: Settings,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize API client.

        Args:
            settings: Application settings (API URL, credentials, timeouts)
            timeout: Timeout for API calls in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.settings = settings
        self.base_url = settings.bugsplat_api_url.rstrip('/')
        self.timeout = timeout
        self._transport = transport
        self._auth_header: Optional[str] = None

    def _client(self, timeout: Optional[float]) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=self._transport,
            follow_redirects=True,
        )

    async def _authenticate(self) -> str:
        """Exchange client credentials for an access token."""
        if not self.settings.bugsplat_client_id or not self.settings.bugsplat_client_secret:
            raise ConfigurationError(
                "Missing required environment variables: BUGSPLAT_CLIENT_ID, BUGSPLAT_CLIENT_SECRET"
            )

        data = {
            "grant_type": "client_credentials",
            "client_id": self.settings.bugsplat_client_id,
            "client_secret": self.settings.bugsplat_client_secret,
            "scope": "restricted",
        }
        async with self._client(self.timeout) as client:
            try:
                response = await client.post("/oauth2/authorize", data=data)
                response.raise_for_status()
                body = response.json()
            except httpx.HTTPStatusError as e:
                logger.error(f"BugSplat authentication failed: {e.response.status_code}")
                raise BundleDownloadError(
                    f"BugSplat authentication failed: {e.response.status_code}"
                ) from e
            except httpx.RequestError as e:
                logger.error(f"Request error during authentication: {e}")
                raise BundleDownloadError(f"Failed to connect to BugSplat: {e}") from e

        token = body.get("access_token")
        if not token:
            raise ConfigurationError(
                f"BugSplat authentication failed: {body.get('error_description') or body.get('error') or 'no access token'}"
            )
        self._auth_header = f"{body.get('token_type', 'Bearer')} {token}"
        logger.info("BugSplatAPIClient: authenticated with client credentials")
        return self._auth_header

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Dict[str, Any] = None,
    ) -> Any:
        """Make an authenticated request, re-authenticating once on 401."""
        for attempt in range(2):
            auth = self._auth_header or await self._authenticate()
            async with self._client(self.timeout) as client:
                try:
                    response = await client.request(
                        method,
                        endpoint,
                        params=params,
                        headers={"Authorization": auth},
                    )
                    if response.status_code == 401 and attempt == 0:
                        logger.info("Access token rejected, re-authenticating")
                        self._auth_header = None
                        continue
                    response.raise_for_status()
                    return response.json()
                except httpx.HTTPStatusError as e:
                    logger.error(f"API error {e.response.status_code}: {e.response.text}")
                    raise BundleDownloadError(f"BugSplat API error: {e.response.status_code}") from e
                except httpx.RequestError as e:
                    logger.error(f"Request error: {e}")
                    raise BundleDownloadError(f"Request failed: {e}") from e
        raise BundleDownloadError("BugSplat rejected the access token")

    @staticmethod
    def _extract_rows(body: Any) -> List[Dict[str, Any]]:
        # /api/crashes answers either {"rows": [...]} or [{"Rows": [...]}]
        if isinstance(body, list):
            body = body[0] if body else {}
        if not isinstance(body, dict):
            return []
        rows = body.get("rows", body.get("Rows", []))
        return rows if isinstance(rows, list) else []

    async def get_crash(self, database: str, crash_id: int) -> CrashInfo:
        """
        Look up one crash by id.

        Raises:
            CrashNotFoundError: If the crash doesn't exist
            BundleDownloadError: On API/network failure
        """
        params = {
            "database": database,
            "pagesize": 1,
            "filterscount": 1,
            "filterdatafield0": "id",
            "filtercondition0": "EQUAL",
            "filteroperator0": 0,
            "filtervalue0": str(crash_id),
        }
        body = await self._request("GET", "/api/crashes", params=params)
        rows = self._extract_rows(body)
        if not rows:
            raise CrashNotFoundError(f"Issue {crash_id} not found in database {database}")
        return CrashInfo.model_validate(rows[0])

    async def download_bundle(self, url: str, destination: Path, max_bytes: int) -> int:
        """
        Stream an attachment bundle to disk.

        The bundle URL is pre-signed, so no Authorization header is sent.
        Single attempt; no retry.

        Args:
            url: Bundle URL from CrashInfo.dumpfile
            destination: File to write
            max_bytes: Abort once more than this many bytes arrive

        Returns:
            Number of bytes written

        Raises:
            BundleDownloadError: On HTTP or transport failure
            AttachmentTooLargeError: If the stream exceeds max_bytes
        """
        written = 0
        timeout = self.settings.mcp_attachment_download_timeout
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport, follow_redirects=True) as client:
            try:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(destination, 'wb') as f:
                        async for chunk in response.aiter_bytes(chunk_size=65536):
                            written += len(chunk)
                            if written > max_bytes:
                                raise AttachmentTooLargeError(
                                    "Attachments zip file is too large to download"
                                )
                            f.write(chunk)
            except httpx.HTTPStatusError as e:
                logger.error(f"HTTP error downloading bundle: {e.response.status_code}")
                raise BundleDownloadError(f"Bundle download failed: {e.response.status_code}") from e
            except httpx.RequestError as e:
                logger.error(f"Request error downloading bundle: {e}")
                raise BundleDownloadError(f"Failed to download attachments: {e}") from e

        logger.info(f"Downloaded attachment bundle ({written} bytes) to {destination}")
        return written
