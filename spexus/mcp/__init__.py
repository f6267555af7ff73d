"""Model Context Protocol gateway for Spexus."""

from .errors import MCPError, map_error
from .server import MCPServer

__all__ = ["MCPError", "MCPServer", "map_error"]
