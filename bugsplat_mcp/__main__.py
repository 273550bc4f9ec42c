"""
MCP Server entry point.

Usage:
    python -m bugsplat_mcp
"""
from bugsplat_mcp.server import main

if __name__ == "__main__":
    main()
