"""JSON-RPC 2.0 message types and the transport interface shared by all transports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

JSONRPC_VERSION = "2.0"

RequestId = Union[int, str]
NotificationHandler = Callable[["JSONRPCNotification"], None]


class TransportError(Exception):
    """Raised when a transport cannot send, receive or manage its connection."""


class RPCError(Exception):
    """An error object returned by the server in a JSON-RPC response."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def __repr__(self) -> str:
        return f"RPCError(code={self.code!r}, message={self.message!r}, data={self.data!r})"


def _check_id(request_id: Any) -> RequestId:
    if isinstance(request_id, bool) or not isinstance(request_id, (int, str)):
        raise TypeError(f"request id must be an int or a str, not {type(request_id).__name__}")
    return request_id


def id_key(request_id: Optional[RequestId]) -> str:
    """Return a lookup key for a request id that keeps integer and string ids apart."""
    if request_id is None:
        return "null"
    if isinstance(request_id, float) and request_id.is_integer():
        request_id = int(request_id)
    request_id = _check_id(request_id)
    if isinstance(request_id, int):
        return f"int:{request_id}"
    return f"str:{request_id}"


@dataclass
class JSONRPCRequest:
    """A request that expects a response carrying the same id."""

    id: RequestId
    method: str
    params: Any = None
    jsonrpc: str = JSONRPC_VERSION

    def __post_init__(self) -> None:
        _check_id(self.id)

    def to_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        return message


@dataclass
class JSONRPCResponse:
    """A response to a request: either a result or an error."""

    id: Optional[RequestId]
    result: Any = None
    error: Optional[RPCError] = None
    jsonrpc: str = JSONRPC_VERSION

    @classmethod
    def from_dict(cls, data: Any) -> "JSONRPCResponse":
        if not isinstance(data, dict):
            raise ValueError("a JSON-RPC response must be an object")
        error = None
        raw_error = data.get("error")
        if raw_error is not None:
            if not isinstance(raw_error, dict):
                raise ValueError("the error member of a response must be an object")
            error = RPCError(
                code=int(raw_error.get("code", 0)),
                message=str(raw_error.get("message", "")),
                data=raw_error.get("data"),
            )
        return cls(
            id=data.get("id"),
            result=data.get("result"),
            error=error,
            jsonrpc=data.get("jsonrpc", JSONRPC_VERSION),
        )


@dataclass
class JSONRPCNotification:
    """A one-way message that carries no id and expects no response."""

    method: str
    params: dict[str, Any] = field(default_factory=dict)
    jsonrpc: str = JSONRPC_VERSION

    def to_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": self.jsonrpc, "method": self.method}
        if self.params:
            message["params"] = self.params
        return message

    @classmethod
    def from_dict(cls, data: Any) -> "JSONRPCNotification":
        if not isinstance(data, dict):
            raise ValueError("a JSON-RPC notification must be an object")
        method = data.get("method")
        if not isinstance(method, str):
            raise ValueError("a JSON-RPC notification needs a method name")
        params = data.get("params") or {}
        if not isinstance(params, dict):
            raise ValueError("notification params must be an object")
        return cls(method=method, params=params, jsonrpc=data.get("jsonrpc", JSONRPC_VERSION))


class Transport(ABC):
    """The connection a client talks to a server over."""

    @abstractmethod
    def start(self) -> None:
        """Open the connection. Call it once."""

    @abstractmethod
    def send_request(self, request: JSONRPCRequest, timeout: Optional[float] = None) -> JSONRPCResponse:
        """Send a request and wait for its response."""

    @abstractmethod
    def send_notification(self, notification: JSONRPCNotification) -> None:
        """Send a notification to the server."""

    @abstractmethod
    def set_notification_handler(self, handler: Optional[NotificationHandler]) -> None:
        """Set the handler for server notifications; earlier notifications are discarded."""

    @abstractmethod
    def close(self) -> None:
        """Close the connection."""