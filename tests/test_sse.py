import json
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import httpx
import pytest

from mcpclient.jsonrpc import JSONRPCNotification, JSONRPCRequest, TransportError
from mcpclient.sse import SSETransport, iter_sse_events


class _EchoServer:
    """A minimal SSE echo server: announces an endpoint and echoes posted messages."""

    def __init__(self, endpoint="/message"):
        self.endpoint = endpoint
        self.stop = threading.Event()
        self.lock = threading.Lock()
        self.sse_out = None
        self.sse_headers = {}
        self.post_headers = {}
        owner = self

        class Handler(BaseHTTPRequestHandler):
            def log_message(self, *args):
                pass

            def do_GET(self):
                owner._serve_sse(self)

            def do_POST(self):
                owner._serve_message(self)

        self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.httpd.daemon_threads = True
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)
        self.thread.start()

    @property
    def url(self):
        return f"http://127.0.0.1:{self.httpd.server_address[1]}"

    def _serve_sse(self, handler):
        self.sse_headers = dict(handler.headers.items())
        handler.send_response(200)
        handler.send_header("Content-Type", "text/event-stream")
        handler.end_headers()
        with self.lock:
            handler.wfile.write(f"event: endpoint\ndata: {self.endpoint}\n\n".encode())
            handler.wfile.flush()
            self.sse_out = handler.wfile
        self.stop.wait()
        with self.lock:
            self.sse_out = None

    def push(self, message):
        with self.lock:
            if self.sse_out is None:
                return
            try:
                self.sse_out.write(f"event: message\ndata: {json.dumps(message)}\n\n".encode())
                self.sse_out.flush()
            except OSError:
                pass

    def _serve_message(self, handler):
        if handler.path != "/message":
            handler.send_error(405)
            return
        self.post_headers = dict(handler.headers.items())
        length = int(handler.headers.get("Content-Length", 0))
        request = json.loads(handler.rfile.read(length))
        response = {"jsonrpc": "2.0", "id": request.get("id"), "result": request}
        method = request.get("method")
        if method == "debug/echo_notification":
            self.push({"jsonrpc": "2.0", "method": "debug/test", "params": request})
        elif method == "debug/echo_error_string":
            response["error"] = {"code": -1, "message": json.dumps(request)}
        handler.send_response(202)
        handler.send_header("Content-Type", "application/json")
        handler.send_header("Content-Length", "0")
        handler.end_headers()
        self.push(response)

    def close(self):
        self.stop.set()
        self.httpd.shutdown()
        self.httpd.server_close()


@pytest.fixture
def server():
    srv = _EchoServer()
    yield srv
    srv.close()


@pytest.fixture
def transport(server):
    trans = SSETransport(server.url)
    trans.start(timeout=10)
    yield trans
    trans.close()


def test_iter_sse_events_basic():
    lines = ["event: endpoint", "data: /message", "", "event: message", "data: {}", ""]
    assert list(iter_sse_events(lines)) == [("endpoint", "/message"), ("message", "{}")]


def test_iter_sse_events_pending_at_end_and_crlf():
    lines = ["event: a\r\n", "data: one\r\n", "\r\n", "event: b\r\n", "data: two\r\n"]
    assert list(iter_sse_events(lines)) == [("a", "one"), ("b", "two")]


def test_iter_sse_events_ignores_incomplete_and_other_fields():
    lines = ["event: only", "", ": comment", "id: 7", "data: lonely", "", "event:x", "data:y", ""]
    assert list(iter_sse_events(lines)) == [("x", "y")]


def test_endpoint_and_base_url(server, transport):
    assert str(transport.base_url) == server.url
    assert str(transport.endpoint) == server.url + "/message"
    assert server.sse_headers.get("Accept") == "text/event-stream"


def test_send_request_echo(transport):
    params = {"string": "hello world", "array": [1, 2, 3]}
    request = JSONRPCRequest(id=1, method="debug/echo", params=params)
    response = transport.send_request(request, timeout=5)
    result = response.result
    assert result["jsonrpc"] == "2.0"
    assert result["id"] == 1
    assert result["method"] == "debug/echo"
    assert result["params"]["string"] == "hello world"
    assert len(result["params"]["array"]) == 3


def test_send_request_with_expired_timeout(transport):
    request = JSONRPCRequest(id=3, method="debug/echo")
    with pytest.raises(TimeoutError):
        transport.send_request(request, timeout=0)


def test_notification_handler(transport):
    received = queue.Queue()
    transport.set_notification_handler(received.put)
    notification = JSONRPCNotification(method="debug/echo_notification", params={"test": "value"})
    transport.send_notification(notification)
    got = received.get(timeout=2)
    assert got.method == "debug/test"
    assert got.params == notification.to_dict()


def test_multiple_requests(transport):
    count = 5

    def send(idx):
        request = JSONRPCRequest(id=100 + idx, method="debug/echo", params={"requestIndex": idx})
        return transport.send_request(request, timeout=5)

    with ThreadPoolExecutor(max_workers=count) as pool:
        responses = list(pool.map(send, range(count)))

    assert [response.id for response in responses] == [100 + idx for idx in range(count)]
    for idx, response in enumerate(responses):
        assert response.result["id"] == 100 + idx
        assert response.result["method"] == "debug/echo"
        assert response.result["params"]["requestIndex"] == idx


def test_response_error(transport):
    request = JSONRPCRequest(id=100, method="debug/echo_error_string")
    response = transport.send_request(request, timeout=5)
    assert response.error is not None
    echoed = json.loads(response.error.message)
    assert echoed["method"] == "debug/echo_error_string"
    assert echoed["id"] == 100
    assert echoed["jsonrpc"] == "2.0"


def test_custom_headers_are_sent(server):
    trans = SSETransport(
        server.url,
        headers={"X-Test-Header": "test-header-value"},
        header_func=lambda: {"X-Test-Header-Func": "test-header-func-value"},
    )
    trans.start(timeout=10)
    try:
        trans.send_request(JSONRPCRequest(id=5, method="debug/echo"), timeout=5)
    finally:
        trans.close()
    assert server.sse_headers.get("X-Test-Header") == "test-header-value"
    assert server.post_headers.get("X-Test-Header") == "test-header-value"
    assert server.post_headers.get("X-Test-Header-Func") == "test-header-func-value"


def test_start_twice_fails(transport):
    with pytest.raises(TransportError, match="already started"):
        transport.start(timeout=1)


def test_invalid_url():
    with pytest.raises(ValueError):
        SSETransport("://invalid-url")


def test_non_existent_url():
    trans = SSETransport("http://127.0.0.1:1")
    try:
        with pytest.raises(TransportError):
            trans.start(timeout=2)
    finally:
        trans.close()


def test_custom_http_client_timeout(server):
    client = httpx.Client(timeout=1e-9)
    trans = SSETransport(server.url, http_client=client)
    try:
        with pytest.raises(TransportError):
            trans.start(timeout=2)
    finally:
        trans.close()
        client.close()


def test_endpoint_with_foreign_origin_is_rejected():
    srv = _EchoServer(endpoint="http://elsewhere.example.com/message")
    trans = SSETransport(srv.url)
    try:
        with pytest.raises(TransportError, match="timeout waiting for endpoint"):
            trans.start(timeout=0.5)
        assert trans.endpoint is None
    finally:
        trans.close()
        srv.close()


def test_request_before_start(server):
    trans = SSETransport(server.url)
    with pytest.raises(TransportError, match="not started"):
        trans.send_request(JSONRPCRequest(id=99, method="ping"), timeout=0.2)
    trans.close()


def test_request_after_close(server):
    trans = SSETransport(server.url)
    trans.start(timeout=10)
    trans.close()
    trans.close()
    with pytest.raises(TransportError, match="closed"):
        trans.send_request(JSONRPCRequest(id=1, method="ping"))