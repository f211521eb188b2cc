"""A transport that receives server messages over Server-Sent Events and posts requests over HTTP."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Optional

import httpx

from .jsonrpc import (
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    NotificationHandler,
    Transport,
    TransportError,
    id_key,
)

log = logging.getLogger(__name__)

HeaderFunc = Callable[[], Mapping[str, str]]

_OK_STATUSES = (200, 202)


def iter_sse_events(lines: Iterable[str]) -> Iterator[tuple[str, str]]:
    """Yield (event, data) pairs from the lines of an SSE stream.

    An event is emitted on a blank line, or at the end of the stream, once both an
    event name and data have been seen. Other fields are ignored.
    """
    event = ""
    data = ""
    for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if event and data:
                yield event, data
                event = ""
                data = ""
            continue
        if line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data = line[len("data:"):].strip()
    if event and data:
        yield event, data


def _parse_base_url(base_url: str) -> httpx.URL:
    if base_url.startswith(":"):
        raise ValueError(f"invalid URL {base_url!r}: missing protocol scheme")
    try:
        return httpx.URL(base_url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise ValueError(f"invalid URL {base_url!r}: {exc}") from exc


class SSETransport(Transport):
    """Keeps an SSE stream open for server messages and sends requests by HTTP POST.

    The server announces the URL to post to in an ``endpoint`` event; responses and
    notifications arrive as ``message`` events on the stream.
    """

    def __init__(
        self,
        base_url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        header_func: Optional[HeaderFunc] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._base_url = _parse_base_url(base_url)
        self._owns_client = http_client is None
        self._http = http_client if http_client is not None else httpx.Client(timeout=None)
        self._headers = dict(headers or {})
        self._header_func = header_func

        self._endpoint: Optional[httpx.URL] = None
        self._endpoint_ready = threading.Event()
        self._stream: Optional[httpx.Response] = None
        self._reader: Optional[threading.Thread] = None

        self._pending: dict[str, Future] = {}
        self._pending_lock = threading.Lock()
        self._handler: Optional[NotificationHandler] = None
        self._handler_lock = threading.Lock()

        self._state_lock = threading.Lock()
        self._started = False
        self._starting = False
        self._closed = threading.Event()

    def _build_headers(self, base: Mapping[str, str]) -> dict[str, str]:
        merged = dict(base)
        merged.update(self._headers)
        if self._header_func is not None:
            merged.update(self._header_func())
        return merged

    def start(self, timeout: Optional[float] = 30.0) -> None:
        """Open the SSE stream and wait until the server announces its endpoint."""
        with self._state_lock:
            if self._started or self._starting:
                raise TransportError("has already started")
            if self._closed.is_set():
                raise TransportError("transport has been closed")
            self._starting = True
        try:
            self._open_stream(timeout)
        finally:
            with self._state_lock:
                self._starting = False

    def _open_stream(self, timeout: Optional[float]) -> None:
        options: dict[str, Any] = {}
        if self._owns_client:
            options["timeout"] = httpx.Timeout(timeout, read=None)
        headers = self._build_headers(
            {
                "Accept": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            }
        )
        try:
            request = self._http.build_request("GET", self._base_url, headers=headers, **options)
            response = self._http.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise TransportError(f"failed to connect to SSE stream: {exc}") from exc

        if response.status_code != 200:
            response.close()
            raise TransportError(f"unexpected status code: {response.status_code}")

        self._stream = response
        self._reader = threading.Thread(
            target=self._read_loop, args=(response,), name="sse-reader", daemon=True
        )
        self._reader.start()

        if not self._endpoint_ready.wait(timeout):
            self._close_stream()
            raise TransportError("timeout waiting for endpoint")
        if self._closed.is_set():
            raise TransportError("transport closed while waiting for endpoint")
        if self._endpoint is None:
            raise TransportError("stream ended before the endpoint was received")

        with self._state_lock:
            self._started = True

    def _close_stream(self) -> None:
        stream = self._stream
        if stream is not None:
            try:
                stream.close()
            except Exception:  # the reader may be tearing the same stream down
                log.debug("error closing SSE stream", exc_info=True)

    def _read_loop(self, response: httpx.Response) -> None:
        try:
            for event, data in iter_sse_events(response.iter_lines()):
                self._handle_event(event, data)
        except (httpx.HTTPError, httpx.StreamError, OSError, ValueError) as exc:
            if not self._closed.is_set():
                log.warning("SSE stream error: %s", exc)
        finally:
            try:
                response.close()
            except Exception:
                log.debug("error closing SSE response", exc_info=True)
            self._fail_pending(TransportError("connection has been closed"))
            self._endpoint_ready.set()

    def _handle_event(self, event: str, data: str) -> None:
        if event == "endpoint":
            try:
                endpoint = self._base_url.join(data)
            except httpx.InvalidURL as exc:
                log.warning("error parsing endpoint URL: %s", exc)
                return
            if (endpoint.host, endpoint.port) != (self._base_url.host, self._base_url.port):
                log.warning("endpoint origin does not match connection origin")
                return
            self._endpoint = endpoint
            self._endpoint_ready.set()
        elif event == "message":
            self._handle_message(data)

    def _handle_message(self, data: str) -> None:
        try:
            message = json.loads(data)
        except ValueError as exc:
            log.warning("error unmarshaling message: %s", exc)
            return
        if not isinstance(message, dict):
            return

        if message.get("id") is None:
            try:
                notification = JSONRPCNotification.from_dict(message)
            except ValueError:
                return
            with self._handler_lock:
                handler = self._handler
            if handler is not None:
                try:
                    handler(notification)
                except Exception:
                    log.exception("notification handler failed")
            return

        try:
            response = JSONRPCResponse.from_dict(message)
            key = id_key(response.id)
        except (ValueError, TypeError):
            return
        with self._pending_lock:
            future = self._pending.pop(key, None)
        if future is not None and not future.done():
            future.set_result(response)

    def _fail_pending(self, error: Exception) -> None:
        with self._pending_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    def _post(self, body: bytes, timeout: Optional[float], what: str) -> httpx.Response:
        options: dict[str, Any] = {}
        if timeout is not None:
            options["timeout"] = httpx.Timeout(timeout)
        headers = self._build_headers({"Content-Type": "application/json"})
        try:
            return self._http.post(str(self._endpoint), content=body, headers=headers, **options)
        except httpx.TimeoutException as exc:
            raise TimeoutError(f"{what} timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"failed to send {what}: {exc}") from exc

    @staticmethod
    def _encode(message: dict[str, Any]) -> bytes:
        try:
            return json.dumps(message, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise TransportError(f"failed to marshal message: {exc}") from exc

    def send_request(self, request: JSONRPCRequest, timeout: Optional[float] = None) -> JSONRPCResponse:
        if not self._started:
            raise TransportError("transport not started yet")
        if self._closed.is_set():
            raise TransportError("transport has been closed")
        if self._endpoint is None:
            raise TransportError("endpoint not received")
        if timeout is not None and timeout <= 0:
            raise TimeoutError(f"deadline passed before request {request.id!r} was sent")

        deadline = None if timeout is None else time.monotonic() + timeout
        body = self._encode(request.to_dict())
        key = id_key(request.id)

        future: Future = Future()
        with self._pending_lock:
            self._pending[key] = future

        def forget() -> None:
            with self._pending_lock:
                if self._pending.get(key) is future:
                    del self._pending[key]

        try:
            response = self._post(body, timeout, "request")
        except (TransportError, TimeoutError):
            forget()
            raise

        if response.status_code not in _OK_STATUSES:
            forget()
            raise TransportError(
                f"request failed with status {response.status_code}: {response.text}"
            )

        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            return future.result(timeout=remaining)
        except FutureTimeout:
            forget()
            raise TimeoutError(f"no response to request {request.id!r} in time") from None

    def send_notification(self, notification: JSONRPCNotification) -> None:
        if self._endpoint is None:
            raise TransportError("endpoint not received")
        body = self._encode(notification.to_dict())
        response = self._post(body, None, "notification")
        if response.status_code not in _OK_STATUSES:
            raise TransportError(
                f"notification failed with status {response.status_code}: {response.text}"
            )

    def set_notification_handler(self, handler: Optional[NotificationHandler]) -> None:
        with self._handler_lock:
            self._handler = handler

    def close(self) -> None:
        with self._state_lock:
            if self._closed.is_set():
                return
            self._closed.set()
        self._close_stream()
        self._endpoint_ready.set()
        self._fail_pending(TransportError("connection has been closed"))
        if self._owns_client:
            try:
                self._http.close()
            except Exception:
                log.debug("error closing HTTP client", exc_info=True)

    @property
    def endpoint(self) -> Optional[httpx.URL]:
        """The URL the server told the client to post messages to."""
        return self._endpoint

    @property
    def base_url(self) -> httpx.URL:
        """The URL of the SSE stream."""
        return self._base_url