"""A client for Model Context Protocol servers, independent of the transport it runs over."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Mapping
from typing import Any, Callable, Optional

from .jsonrpc import (
    JSONRPCNotification,
    JSONRPCRequest,
    NotificationHandler,
    Transport,
    TransportError,
)
from .sse import SSETransport
from .stdio import EnvSpec, StdioTransport
from .streamable_http import StreamableHTTPTransport

log = logging.getLogger(__name__)

LATEST_PROTOCOL_VERSION = "2025-03-26"
DEFAULT_CLIENT_INFO = {"name": "mcpclient", "version": "0.1.0"}


class ClientError(Exception):
    """Raised when the client is misused or the server sends something it cannot read."""


def _deadline(timeout: Optional[float]) -> Optional[float]:
    return None if timeout is None else time.monotonic() + timeout


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    left = deadline - time.monotonic()
    if left <= 0:
        raise TimeoutError("deadline passed while listing pages")
    return left


def _expect_object(result: Any) -> dict[str, Any]:
    if not isinstance(result, dict):
        raise ClientError(
            f"failed to unmarshal response: expected an object, got {type(result).__name__}"
        )
    return result


class Client:
    """Talks to an MCP server through a transport.

    Call ``start`` first, then ``initialize``; every other request is refused
    until initialization has succeeded. Results are returned as the JSON objects
    the server sent.
    """

    def __init__(
        self,
        transport: Optional[Transport],
        *,
        client_capabilities: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._transport = transport
        self._client_capabilities: dict[str, Any] = dict(client_capabilities or {})
        self._server_capabilities: dict[str, Any] = {}
        self._initialized = False
        self._started = False
        self._handlers: list[NotificationHandler] = []
        self._handlers_lock = threading.Lock()
        self._ids = itertools.count(1)
        self._ids_lock = threading.Lock()

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def start(self) -> None:
        """Open the transport and route its notifications to the registered handlers."""
        if self._transport is None:
            raise ClientError("transport is nil")
        if self._started:
            raise ClientError("client has already started")
        self._transport.start()
        self._attach()

    def _attach(self) -> None:
        self._started = True
        self._transport.set_notification_handler(self._dispatch)

    def _dispatch(self, notification: JSONRPCNotification) -> None:
        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(notification)
            except Exception:
                log.exception("notification handler failed")

    def close(self) -> None:
        """Close the transport."""
        if self._transport is not None:
            self._transport.close()

    def on_notification(self, handler: NotificationHandler) -> None:
        """Register a handler; handlers run in the order they were added."""
        with self._handlers_lock:
            self._handlers.append(handler)

    def _next_id(self) -> int:
        with self._ids_lock:
            return next(self._ids)

    def _send_request(self, method: str, params: Any, timeout: Optional[float]) -> Any:
        if not self._initialized and method != "initialize":
            raise ClientError("client not initialized")
        if self._transport is None:
            raise ClientError("transport is nil")
        request = JSONRPCRequest(id=self._next_id(), method=method, params=params)
        response = self._transport.send_request(request, timeout=timeout)
        if response.error is not None:
            raise response.error
        return response.result

    def initialize(
        self,
        protocol_version: str = LATEST_PROTOCOL_VERSION,
        client_info: Optional[Mapping[str, Any]] = None,
        capabilities: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Negotiate with the server and announce that the client is ready."""
        if capabilities is None:
            capabilities = self._client_capabilities
        params = {
            "protocolVersion": protocol_version,
            "clientInfo": dict(client_info if client_info is not None else DEFAULT_CLIENT_INFO),
            "capabilities": dict(capabilities),
        }
        result = _expect_object(self._send_request("initialize", params, timeout))
        capabilities_seen = result.get("capabilities") or {}
        self._server_capabilities = dict(capabilities_seen) if isinstance(capabilities_seen, dict) else {}

        try:
            self._transport.send_notification(
                JSONRPCNotification(method="notifications/initialized")
            )
        except (TransportError, OSError) as exc:
            raise ClientError(f"failed to send initialized notification: {exc}") from exc

        self._initialized = True
        return result

    def ping(self, timeout: Optional[float] = None) -> None:
        """Check that the server answers."""
        self._send_request("ping", None, timeout)

    def _list_page(self, method: str, cursor: Optional[str], timeout: Optional[float]) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if cursor:
            params["cursor"] = cursor
        return _expect_object(self._send_request(method, params, timeout))

    def _list_all(
        self,
        by_page: Callable[[Optional[str], Optional[float]], dict[str, Any]],
        key: str,
        cursor: Optional[str],
        timeout: Optional[float],
    ) -> dict[str, Any]:
        deadline = _deadline(timeout)
        result = by_page(cursor, timeout)
        items = list(result.get(key) or [])
        next_cursor = result.get("nextCursor")
        while next_cursor:
            page = by_page(next_cursor, _remaining(deadline))
            items.extend(page.get(key) or [])
            next_cursor = page.get("nextCursor")
        result[key] = items
        result.pop("nextCursor", None)
        return result

    def list_resources_by_page(self, cursor: Optional[str] = None, timeout: Optional[float] = None) -> dict[str, Any]:
        """Fetch one page of resources."""
        return self._list_page("resources/list", cursor, timeout)

    def list_resources(self, cursor: Optional[str] = None, timeout: Optional[float] = None) -> dict[str, Any]:
        """Fetch every page of resources, following cursors."""
        return self._list_all(self.list_resources_by_page, "resources", cursor, timeout)

    def list_resource_templates_by_page(
        self, cursor: Optional[str] = None, timeout: Optional[float] = None
    ) -> dict[str, Any]:
        """Fetch one page of resource templates."""
        return self._list_page("resources/templates/list", cursor, timeout)

    def list_resource_templates(
        self, cursor: Optional[str] = None, timeout: Optional[float] = None
    ) -> dict[str, Any]:
        """Fetch every page of resource templates, following cursors."""
        return self._list_all(
            self.list_resource_templates_by_page, "resourceTemplates", cursor, timeout
        )

    def read_resource(
        self,
        uri: str,
        arguments: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Read the contents of a resource."""
        params: dict[str, Any] = {"uri": uri}
        if arguments:
            params["arguments"] = dict(arguments)
        return _expect_object(self._send_request("resources/read", params, timeout))

    def subscribe(self, uri: str, timeout: Optional[float] = None) -> None:
        """Ask for notifications when a resource changes."""
        self._send_request("resources/subscribe", {"uri": uri}, timeout)

    def unsubscribe(self, uri: str, timeout: Optional[float] = None) -> None:
        """Stop notifications for a resource."""
        self._send_request("resources/unsubscribe", {"uri": uri}, timeout)

    def list_prompts_by_page(self, cursor: Optional[str] = None, timeout: Optional[float] = None) -> dict[str, Any]:
        """Fetch one page of prompts."""
        return self._list_page("prompts/list", cursor, timeout)

    def list_prompts(self, cursor: Optional[str] = None, timeout: Optional[float] = None) -> dict[str, Any]:
        """Fetch every page of prompts, following cursors."""
        return self._list_all(self.list_prompts_by_page, "prompts", cursor, timeout)

    def get_prompt(
        self,
        name: str,
        arguments: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Fetch a prompt filled in with the given arguments."""
        params: dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = dict(arguments)
        return _expect_object(self._send_request("prompts/get", params, timeout))

    def list_tools_by_page(self, cursor: Optional[str] = None, timeout: Optional[float] = None) -> dict[str, Any]:
        """Fetch one page of tools."""
        return self._list_page("tools/list", cursor, timeout)

    def list_tools(self, cursor: Optional[str] = None, timeout: Optional[float] = None) -> dict[str, Any]:
        """Fetch every page of tools, following cursors."""
        return self._list_all(self.list_tools_by_page, "tools", cursor, timeout)

    def call_tool(
        self,
        name: str,
        arguments: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Invoke a tool on the server."""
        params: dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = dict(arguments)
        return _expect_object(self._send_request("tools/call", params, timeout))

    def set_level(self, level: str, timeout: Optional[float] = None) -> None:
        """Set the level of log messages the server sends."""
        self._send_request("logging/setLevel", {"level": str(level)}, timeout)

    def complete(
        self,
        ref: Mapping[str, Any],
        argument_name: str,
        argument_value: str,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Ask for completions of an argument of a prompt or resource reference."""
        params = {
            "ref": dict(ref),
            "argument": {"name": argument_name, "value": argument_value},
        }
        return _expect_object(self._send_request("completion/complete", params, timeout))

    @property
    def transport(self) -> Optional[Transport]:
        """The transport the client talks over."""
        return self._transport

    @property
    def server_capabilities(self) -> dict[str, Any]:
        """The capabilities the server announced on initialize."""
        return self._server_capabilities

    @property
    def client_capabilities(self) -> dict[str, Any]:
        """The capabilities this client was configured with."""
        return self._client_capabilities


def new_stdio_client(command: str, env: EnvSpec, *args: str) -> Client:
    """Launch a server process and return a client connected to it, already started."""
    transport = StdioTransport(command, env, args)
    try:
        transport.start()
    except TransportError as exc:
        raise TransportError(f"failed to start stdio transport: {exc}") from exc
    client = Client(transport)
    client._attach()
    return client


def new_sse_client(base_url: str, **kwargs: Any) -> Client:
    """Return a client over an SSE transport; call ``start`` on it before use."""
    try:
        transport = SSETransport(base_url, **kwargs)
    except ValueError as exc:
        raise ValueError(f"failed to create SSE transport: {exc}") from exc
    return Client(transport)


def new_streamable_http_client(base_url: str, **kwargs: Any) -> Client:
    """Return a client over a Streamable HTTP transport."""
    try:
        transport = StreamableHTTPTransport(base_url, **kwargs)
    except ValueError as exc:
        raise ValueError(f"failed to create streamable HTTP transport: {exc}") from exc
    return Client(transport)


def get_stderr(client: Client) -> Optional[Any]:
    """The server's stderr stream if the client runs over stdio, else None."""
    transport = client.transport
    if isinstance(transport, StdioTransport):
        return transport.stderr
    return None


def get_endpoint(client: Client) -> Any:
    """The message endpoint of a client running over SSE."""
    transport = client.transport
    if not isinstance(transport, SSETransport):
        raise TypeError("the client does not run over an SSE transport")
    return transport.endpoint