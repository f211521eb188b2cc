"""Model Context Protocol client with stdio, SSE and streamable HTTP transports and a command-line tool."""

__version__ = "0.1.0"
__all__ = ["jsonrpc", "stdio", "sse", "streamable_http", "client", "cli"]