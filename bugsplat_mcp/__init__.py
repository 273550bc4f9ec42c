"""
BugSplat Attachments MCP Server

Exposes crash attachments from a BugSplat database as MCP tools.

Architecture:
    Claude/Cursor → MCP Server → local attachment cache → BugSplat API

The attachment service can be used standalone; the server functions
require the MCP SDK.
"""
from bugsplat_mcp.attachments import AttachmentService

# Lazy import server functions (requires MCP SDK)
def create_server():
    """Create the MCP server (requires mcp package)."""
    from bugsplat_mcp.server import create_server as _create_server
    return _create_server()

def run_server():
    """Run the MCP server (requires mcp package)."""
    from bugsplat_mcp.server import run_server as _run_server
    return _run_server()

__all__ = ['AttachmentService', 'create_server', 'run_server']
