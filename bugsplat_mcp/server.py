"""
BugSplat Attachments MCP Server

A Model Context Protocol server that exposes crash attachments (log files,
screenshots, etc.) from a BugSplat database to AI assistants.

Architecture:
    Claude/Cursor → MCP Server → local attachment cache → BugSplat API

Usage:
    python -m bugsplat_mcp

Configuration (environment or .env):
- BUGSPLAT_DATABASE, BUGSPLAT_CLIENT_ID, BUGSPLAT_CLIENT_SECRET (required)
- MCP_ATTACHMENT_CACHE_DIR, MCP_ATTACHMENT_CACHE_TTL_DAYS (optional)

Transport is stdio; logs go to a file and stderr, never stdout.
"""
import asyncio
import base64
import json
import logging
import sys
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Union

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import ImageContent, TextContent, Tool

from bugsplat_mcp.attachments import AttachmentChunk, AttachmentService
from bugsplat_mcp.cache import CacheReaper
from bugsplat_mcp.config import Settings, get_settings, log_dir
from bugsplat_mcp.errors import BugSplatMCPError
from bugsplat_mcp.pagination import format_pagination_header
from bugsplat_mcp.schemas import AttachmentListing, ErrorResponse

logger = logging.getLogger(__name__)

Content = Union[TextContent, ImageContent]


def configure_logging(settings: Settings) -> None:
    """Log to a dated file for the audit trail, and to stderr."""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    directory = log_dir(settings)
    try:
        directory.mkdir(parents=True, exist_ok=True)
        log_file = directory / f"mcp_server_{datetime.now().strftime('%Y%m%d')}.log"
        handlers.insert(0, logging.FileHandler(log_file))
    except OSError as e:
        print(f"Cannot write logs to {directory}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def audit_log(tool_name: str, arguments: dict, user_info: str = "local"):
    """Log tool usage for audit trail."""
    logger.info(f"AUDIT: tool={tool_name} user={user_info} args={arguments}")


TOOLS = [
    Tool(
        name="list-attachments",
        description="""Get list of attachments for a specific BugSplat issue.

The attachments tool lists the attachments (log files, screenshots, etc.) for a
specific crash and is useful for determining the cause of and fixing a specific crash.

Attachments are downloaded once and cached locally.""",
        inputSchema={
            "type": "object",
            "properties": {
                "id": {
                    "type": "integer",
                    "description": "Issue ID to retrieve",
                    "minimum": 1
                }
            },
            "required": ["id"]
        }
    ),
    Tool(
        name="get-attachment",
        description="""Get a specific attachment for a BugSplat issue.

Returns text files as text and images as image content. Supports pagination for
large files to avoid exceeding token limits: the response header shows the byte
range returned and the offset of the next chunk.

Oversized text is truncated to its last bytes; oversized images are downscaled.""",
        inputSchema={
            "type": "object",
            "properties": {
                "crashId": {
                    "type": "integer",
                    "description": "The ID of the crash report",
                    "minimum": 1
                },
                "file": {
                    "type": "string",
                    "description": "The name of the attachment file to retrieve"
                },
                "offset": {
                    "type": "integer",
                    "description": "Starting byte position (defaults to 0)",
                    "minimum": 0,
                    "default": 0
                },
                "limit": {
                    "type": "integer",
                    "description": "Maximum number of bytes to read (1-1048576, defaults to 262144 bytes)",
                    "minimum": 1,
                    "maximum": 1048576,
                    "default": 262144
                }
            },
            "required": ["crashId", "file"]
        }
    ),
    Tool(
        name="clear-attachment-cache",
        description="Delete cached crash attachments. By default removes crashes cached longer than the retention window (14 days); pass older_than_days=0 to clear everything.",
        inputSchema={
            "type": "object",
            "properties": {
                "older_than_days": {
                    "type": "integer",
                    "description": "Only delete crashes cached longer than this many days",
                    "minimum": 0
                }
            },
            "required": []
        }
    ),
]


def format_list_attachments_output(listing: AttachmentListing) -> str:
    return (
        f"Attachments for crash #{listing.crash_id} in database {listing.database}\n"
        + "\n".join(f"- {name}" for name in listing.files)
    )


def build_attachment_content(chunk: AttachmentChunk) -> List[Content]:
    """Render a fitted attachment chunk as MCP content."""
    header = format_pagination_header(chunk.file_name, chunk.pagination)
    if chunk.media_type.startswith("image/"):
        return [
            TextContent(type="text", text=header),
            ImageContent(
                type="image",
                data=base64.b64encode(chunk.data).decode("ascii"),
                mimeType=chunk.media_type,
            ),
        ]
    text = chunk.data.decode("utf-8", errors="replace")
    return [TextContent(type="text", text=header + text)]


def error_content(error: Exception) -> List[TextContent]:
    if isinstance(error, BugSplatMCPError):
        details = str(error.__cause__) if error.__cause__ is not None else None
        payload = ErrorResponse(error=str(error), error_type=error.code, details=details)
    elif isinstance(error, (KeyError, TypeError, ValueError)):
        payload = ErrorResponse(error=f"Invalid arguments: {error}", error_type="invalid_arguments")
    else:
        payload = ErrorResponse(error=str(error) or type(error).__name__, error_type="internal_error")
    return [TextContent(
        type="text",
        text=json.dumps(payload.model_dump(exclude_none=True), indent=2)
    )]


def _int_arg(
    arguments: dict,
    name: str,
    default: Optional[int] = None,
    required: bool = False,
) -> Optional[int]:
    value = arguments.get(name, default)
    if value is None:
        if required:
            raise ValueError(f"{name} is required")
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise ValueError(f"{name} must be an integer")
    return int(value)


async def dispatch_tool(
    name: str,
    arguments: dict,
    settings: Settings,
    get_service: Callable[[], AttachmentService],
) -> List[Content]:
    """
    Execute a tool. Never raises: failures become an ErrorResponse payload.
    """
    try:
        audit_log(name, arguments)

        if name == "list-attachments":
            settings.require_credentials()
            crash_id = _int_arg(arguments, "id", required=True)
            listing = await get_service().list_attachments(crash_id)
            return [TextContent(type="text", text=format_list_attachments_output(listing))]

        elif name == "get-attachment":
            settings.require_credentials()
            crash_id = _int_arg(arguments, "crashId", required=True)
            file_name = arguments.get("file")
            if not isinstance(file_name, str) or not file_name:
                raise ValueError("file is required")
            offset = _int_arg(arguments, "offset", 0)
            if offset < 0:
                raise ValueError("offset must be >= 0")
            limit = _int_arg(arguments, "limit", settings.mcp_default_chunk_bytes)
            chunk = await get_service().get_attachment(crash_id, file_name, offset, limit)
            logger.info(
                f"AUDIT: Attachment served - crash_id={crash_id}, file={file_name}, "
                f"range={chunk.pagination.offset}-{chunk.pagination.end}/{chunk.pagination.total_size}, "
                f"payload={len(chunk.data)}"
            )
            return build_attachment_content(chunk)

        elif name == "clear-attachment-cache":
            days = _int_arg(arguments, "older_than_days")
            retention = timedelta(days=days) if days is not None else None
            result = CacheReaper(settings).reap_expired(retention)
            return [TextContent(type="text", text=json.dumps(result.model_dump(), indent=2))]

        else:
            payload = ErrorResponse(error=f"Unknown tool: {name}", error_type="unknown_tool")
            return [TextContent(type="text", text=json.dumps(payload.model_dump(exclude_none=True), indent=2))]

    except BugSplatMCPError as e:
        logger.warning(f"Tool {name} failed: {e}")
        return error_content(e)
    except Exception as e:
        logger.error(f"Tool execution error: {e}", exc_info=True)
        return error_content(e)


def create_server(settings: Optional[Settings] = None) -> Server:
    """Create and configure the MCP server."""
    settings = settings or get_settings()
    server = Server("bugsplat-mcp")

    # One service per process so concurrent fetches share its lock map
    service: Optional[AttachmentService] = None

    def get_service() -> AttachmentService:
        nonlocal service
        if service is None:
            service = AttachmentService(settings)
        return service

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Return list of available tools."""
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[Any]:
        """Execute a tool and return results."""
        return await dispatch_tool(name, arguments or {}, settings, get_service)

    return server


def reap_on_startup(settings: Settings) -> None:
    """Drop crashes cached longer than the retention window."""
    try:
        result = CacheReaper(settings).reap_expired()
    except BugSplatMCPError as e:
        logger.warning(f"Skipping attachment cache cleanup: {e}")
        return
    if result.deleted:
        logger.info(f"Removed {len(result.deleted)} expired crash attachment directories")


async def run_server():
    """Run the MCP server using stdio transport."""
    settings = get_settings()
    reap_on_startup(settings)
    server = create_server(settings)

    async with stdio_server() as (read_stream, write_stream):
        logger.info("BugSplat MCP Server running on stdio")
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options()
        )


def main():
    """Entry point for the MCP server."""
    load_dotenv()
    configure_logging(get_settings())
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
