"""Command-line client that connects to an MCP server and lists what it offers."""

from __future__ import annotations

import argparse
import sys
import threading
import time
from typing import IO, Any, Optional

from .client import LATEST_PROTOCOL_VERSION, Client, get_stderr
from .jsonrpc import JSONRPCNotification, RPCError, TransportError
from .stdio import StdioTransport
from .streamable_http import StreamableHTTPTransport

TIMEOUT = 30.0
CLIENT_INFO = {"name": "MCP Simple Client Example", "version": "1.0.0"}

_FAILURES = (TransportError, RPCError, TimeoutError, OSError, ValueError, RuntimeError)


def parse_command(cmd: str) -> list[str]:
    """Split a command line into words on spaces, honouring single and double quotes.

    Escapes are not handled; a quote of the other kind inside a quoted word is kept.
    """
    words: list[str] = []
    current = ""
    quote: Optional[str] = None
    for char in cmd:
        if char == " " and quote is None:
            if current:
                words.append(current)
                current = ""
        elif char in ("'", '"'):
            if quote == char:
                quote = None
            elif quote is None:
                quote = char
            else:
                current += char
        else:
            current += char
    if current:
        words.append(current)
    return words


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcpclient",
        description="Connect to an MCP server and list its tools and resources.",
    )
    parser.add_argument(
        "--stdio",
        default="",
        help="Command to execute for stdio transport (e.g. 'python server.py')",
    )
    parser.add_argument(
        "--http",
        default="",
        help="URL for HTTP transport (e.g. 'http://localhost:8080/mcp')",
    )
    return parser


def _forward_stderr(stream: IO[Any]) -> None:
    try:
        for chunk in iter(stream.readline, b""):
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace") if isinstance(chunk, bytes) else chunk
            sys.stderr.write(f"[Server] {text}")
            sys.stderr.flush()
    except (OSError, ValueError) as exc:
        if not getattr(stream, "closed", False):
            print(f"Error reading stderr: {exc}", file=sys.stderr)


def _fail(message: str) -> int:
    print(message, file=sys.stderr)
    return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Run the client; return the process exit status."""
    parser = _build_parser()
    options = parser.parse_args(argv)

    if bool(options.stdio) == bool(options.http):
        print("Error: You must specify exactly one of --stdio or --http")
        parser.print_usage(sys.stderr)
        return 1

    deadline = time.monotonic() + TIMEOUT

    def remaining() -> float:
        return max(0.0, deadline - time.monotonic())

    if options.stdio:
        print("Initializing stdio client...")
        words = parse_command(options.stdio)
        if not words:
            print("Error: Invalid stdio command")
            return 1
        client = Client(StdioTransport(words[0], None, words[1:]))
    else:
        print("Initializing HTTP client...")
        try:
            transport = StreamableHTTPTransport(options.http)
        except ValueError as exc:
            return _fail(f"Failed to create HTTP transport: {exc}")
        client = Client(transport)

    try:
        client.start()
    except _FAILURES as exc:
        return _fail(f"Failed to start client: {exc}")

    forwarder: Optional[threading.Thread] = None
    stderr = get_stderr(client)
    if stderr is not None:
        forwarder = threading.Thread(
            target=_forward_stderr, args=(stderr,), name="server-stderr", daemon=True
        )
        forwarder.start()

    def on_notification(notification: JSONRPCNotification) -> None:
        print(f"Received notification: {notification.method}")

    client.on_notification(on_notification)

    try:
        return _run_session(client, remaining)
    finally:
        try:
            client.close()
        except _FAILURES as exc:
            print(f"Error closing client: {exc}", file=sys.stderr)
        if forwarder is not None:
            forwarder.join(timeout=5)


def _run_session(client: Client, remaining: Any) -> int:
    print("Initializing client...")
    try:
        server = client.initialize(
            protocol_version=LATEST_PROTOCOL_VERSION,
            client_info=CLIENT_INFO,
            capabilities={},
            timeout=remaining(),
        )
    except Exception as exc:  # any failure here ends the run
        return _fail(f"Failed to initialize: {exc}")

    info = server.get("serverInfo") or {}
    capabilities = server.get("capabilities") or {}
    print(f"Connected to server: {info.get('name', '')} (version {info.get('version', '')})")
    print(f"Server capabilities: {capabilities}")

    if capabilities.get("tools") is not None:
        print("Fetching available tools...")
        try:
            tools = client.list_tools(timeout=remaining()).get("tools", [])
        except Exception as exc:
            print(f"Failed to list tools: {exc}", file=sys.stderr)
        else:
            print(f"Server has {len(tools)} tools available")
            for number, tool in enumerate(tools, start=1):
                print(f"  {number}. {tool.get('name', '')} - {tool.get('description', '')}")

    if capabilities.get("resources") is not None:
        print("Fetching available resources...")
        try:
            resources = client.list_resources(timeout=remaining()).get("resources", [])
        except Exception as exc:
            print(f"Failed to list resources: {exc}", file=sys.stderr)
        else:
            print(f"Server has {len(resources)} resources available")
            for number, resource in enumerate(resources, start=1):
                print(f"  {number}. {resource.get('uri', '')} - {resource.get('name', '')}")

    print("Client initialized successfully. Shutting down...")
    return 0


if __name__ == "__main__":
    sys.exit(main())