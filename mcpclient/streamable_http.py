"""A transport that sends each JSON-RPC message as its own HTTP POST (Streamable HTTP)."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Mapping
from typing import Any, Optional

import httpx

from .jsonrpc import (
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    NotificationHandler,
    Transport,
    TransportError,
)
from .sse import HeaderFunc, _parse_base_url, iter_sse_events

log = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"

_OK_STATUSES = (200, 202)
_CLOSE_TIMEOUT = 5.0


def _media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


class StreamableHTTPTransport(Transport):
    """Posts every message to one URL; the reply is plain JSON or an SSE stream.

    An SSE reply may carry notifications before it ends with the response to the
    request. Batching, resuming streams, listening for server messages outside a
    request and server-to-client requests are not supported.
    """

    def __init__(
        self,
        base_url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        header_func: Optional[HeaderFunc] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._base_url = _parse_base_url(base_url)
        self._owns_client = http_client is None
        self._http = http_client if http_client is not None else httpx.Client(timeout=timeout)
        self._timeout = timeout
        self._headers = dict(headers or {})
        self._header_func = header_func

        self._session_id = ""
        self._state_lock = threading.Lock()
        self._closed = threading.Event()
        self._in_flight: set[httpx.Response] = set()

        self._handler: Optional[NotificationHandler] = None
        self._handler_lock = threading.Lock()

    def start(self) -> None:
        """Nothing to open: every message travels over its own HTTP request."""

    def _build_headers(self, session_id: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if session_id:
            headers[SESSION_HEADER] = session_id
        headers.update(self._headers)
        if self._header_func is not None:
            headers.update(self._header_func())
        return headers

    @staticmethod
    def _encode(message: dict[str, Any]) -> bytes:
        try:
            return json.dumps(message, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise TransportError(f"failed to marshal message: {exc}") from exc

    def _open(self, body: bytes, headers: dict[str, str], timeout: Optional[float]) -> httpx.Response:
        options: dict[str, Any] = {}
        effective = timeout if timeout is not None else self._timeout
        if effective is not None:
            options["timeout"] = httpx.Timeout(effective)
        try:
            request = self._http.build_request(
                "POST", self._base_url, content=body, headers=headers, **options
            )
            response = self._http.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise TimeoutError(f"request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"failed to send request: {exc}") from exc
        except RuntimeError as exc:
            if self._closed.is_set():
                raise TransportError("transport has been closed") from exc
            raise
        with self._state_lock:
            if self._closed.is_set():
                response.close()
                raise TransportError("transport has been closed")
            self._in_flight.add(response)
        return response

    def _release(self, response: httpx.Response) -> None:
        with self._state_lock:
            self._in_flight.discard(response)
        try:
            response.close()
        except Exception:
            log.debug("error closing response", exc_info=True)

    def send_request(self, request: JSONRPCRequest, timeout: Optional[float] = None) -> JSONRPCResponse:
        if self._closed.is_set():
            raise TransportError("transport has been closed")
        if timeout is not None and timeout <= 0:
            raise TimeoutError(f"deadline passed before request {request.id!r} was sent")

        deadline = None if timeout is None else time.monotonic() + timeout
        body = self._encode(request.to_dict())
        with self._state_lock:
            session_id = self._session_id
        response = self._open(body, self._build_headers(session_id), timeout)
        try:
            return self._read_response(request, response, session_id, deadline)
        except httpx.TimeoutException as exc:
            raise TimeoutError(f"response to request {request.id!r} timed out: {exc}") from exc
        except (httpx.HTTPError, httpx.StreamError, OSError) as exc:
            if self._closed.is_set():
                raise TransportError("transport has been closed") from exc
            raise TransportError(f"failed to read response: {exc}") from exc
        finally:
            self._release(response)

    def _read_response(
        self,
        request: JSONRPCRequest,
        response: httpx.Response,
        session_id: str,
        deadline: Optional[float],
    ) -> JSONRPCResponse:
        status = response.status_code
        if status not in _OK_STATUSES:
            if status == 404:
                with self._state_lock:
                    if self._session_id == session_id:
                        self._session_id = ""
                raise TransportError("session terminated (404). need to re-initialize")
            raw = response.read()
            try:
                return JSONRPCResponse.from_dict(json.loads(raw))
            except ValueError:
                text = raw.decode("utf-8", errors="replace")
                raise TransportError(f"request failed with status {status}: {text}") from None

        if request.method == "initialize":
            new_session = response.headers.get(SESSION_HEADER, "")
            if new_session:
                with self._state_lock:
                    self._session_id = new_session

        content_type = response.headers.get("content-type", "")
        media_type = _media_type(content_type)
        if media_type == "application/json":
            try:
                message = JSONRPCResponse.from_dict(json.loads(response.read()))
            except ValueError as exc:
                raise TransportError(f"failed to decode response: {exc}") from exc
            if message.id is None:
                raise TransportError(f"response should contain RPC id: {message!r}")
            return message
        if media_type == "text/event-stream":
            return self._read_stream(response, deadline)
        raise TransportError(f"unexpected content type: {content_type}")

    def _read_stream(self, response: httpx.Response, deadline: Optional[float]) -> JSONRPCResponse:
        for _event, data in iter_sse_events(response.iter_lines()):
            if deadline is not None and time.monotonic() > deadline:
                raise TimeoutError("no response arrived on the event stream in time")
            try:
                message = json.loads(data)
            except ValueError as exc:
                log.warning("failed to unmarshal message: %s", exc)
                continue
            if not isinstance(message, dict):
                continue
            if message.get("id") is None:
                self._notify(message)
                continue
            try:
                return JSONRPCResponse.from_dict(message)
            except ValueError as exc:
                log.warning("failed to unmarshal message: %s", exc)
        if self._closed.is_set():
            raise TransportError("transport has been closed")
        raise TransportError("unexpected nil response")

    def _notify(self, message: dict[str, Any]) -> None:
        try:
            notification = JSONRPCNotification.from_dict(message)
        except ValueError as exc:
            log.warning("failed to unmarshal notification: %s", exc)
            return
        with self._handler_lock:
            handler = self._handler
        if handler is not None:
            try:
                handler(notification)
            except Exception:
                log.exception("notification handler failed")

    def send_notification(self, notification: JSONRPCNotification) -> None:
        if self._closed.is_set():
            raise TransportError("transport has been closed")
        body = self._encode(notification.to_dict())
        with self._state_lock:
            session_id = self._session_id
        response = self._open(body, self._build_headers(session_id), None)
        try:
            if response.status_code not in _OK_STATUSES:
                text = response.read().decode("utf-8", errors="replace")
                raise TransportError(
                    f"notification failed with status {response.status_code}: {text}"
                )
        finally:
            self._release(response)

    def set_notification_handler(self, handler: Optional[NotificationHandler]) -> None:
        with self._handler_lock:
            self._handler = handler

    def close(self) -> None:
        """Abort requests in flight and tell the server the session has ended."""
        with self._state_lock:
            if self._closed.is_set():
                return
            self._closed.set()
            session_id = self._session_id
            self._session_id = ""
            in_flight = list(self._in_flight)
            self._in_flight.clear()
        for response in in_flight:
            try:
                response.close()
            except Exception:
                log.debug("error closing response", exc_info=True)

        if session_id:
            threading.Thread(
                target=self._terminate_session,
                args=(session_id,),
                name="session-close",
                daemon=True,
            ).start()
        elif self._owns_client:
            self._http.close()

    def _terminate_session(self, session_id: str) -> None:
        try:
            response = self._http.delete(
                self._base_url,
                headers={SESSION_HEADER: session_id},
                timeout=httpx.Timeout(_CLOSE_TIMEOUT),
            )
            response.close()
        except (httpx.HTTPError, RuntimeError) as exc:
            log.warning("failed to send close request: %s", exc)
        finally:
            if self._owns_client:
                self._http.close()

    @property
    def session_id(self) -> str:
        """The session id the server assigned on initialize, or an empty string."""
        with self._state_lock:
            return self._session_id