import io
import json
import os
import queue
import sys
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from mcpclient.jsonrpc import JSONRPCNotification, JSONRPCRequest, TransportError
from mcpclient.stdio import StdioTransport

MOCK_SERVER = r"""
import json, sys
sys.stderr.write(json.dumps({"msg": "launch successful"}) + "\n")
sys.stderr.flush()
for line in iter(sys.stdin.readline, ""):
    try:
        req = json.loads(line)
    except ValueError:
        continue
    method = req.get("method")
    if req.get("id") is None:
        if method != "debug/echo_notification":
            continue
        out = {"jsonrpc": "2.0", "method": "debug/test", "params": req}
    elif method == "debug/echo_error_string":
        out = {"jsonrpc": "2.0", "id": req["id"],
               "error": {"code": -1, "message": json.dumps(req)}}
    else:
        out = {"jsonrpc": "2.0", "id": req["id"], "result": req}
    sys.stdout.write(json.dumps(out) + "\n")
    sys.stdout.flush()
"""


def _mock_transport():
    return StdioTransport(sys.executable, None, ["-c", MOCK_SERVER])


@pytest.fixture(scope="module")
def stdio():
    transport = _mock_transport()
    transport.start()
    yield transport
    transport.close()


def test_send_request(stdio):
    request = JSONRPCRequest(
        id=1, method="debug/echo", params={"string": "hello world", "array": [1, 2, 3]}
    )
    response = stdio.send_request(request, timeout=5)
    result = response.result
    assert result["jsonrpc"] == "2.0"
    assert result["id"] == 1 and isinstance(result["id"], int)
    assert result["method"] == "debug/echo"
    assert result["params"]["string"] == "hello world"
    assert len(result["params"]["array"]) == 3


def test_send_request_with_timeout(stdio):
    request = JSONRPCRequest(id=3, method="debug/echo")
    with pytest.raises(TimeoutError):
        stdio.send_request(request, timeout=0)


def test_send_notification_and_handler(stdio):
    received = queue.Queue()
    stdio.set_notification_handler(received.put)
    notification = JSONRPCNotification(method="debug/echo_notification", params={"test": "value"})
    stdio.send_notification(notification)
    got = received.get(timeout=1)
    assert got.method == "debug/test"
    assert got.params == notification.to_dict()
    stdio.set_notification_handler(None)


def test_multiple_requests(stdio):
    def send(idx):
        request = JSONRPCRequest(
            id=100 + idx, method="debug/echo", params={"requestIndex": idx}
        )
        return stdio.send_request(request, timeout=5)

    with ThreadPoolExecutor(max_workers=5) as pool:
        responses = list(pool.map(send, range(5)))

    for idx, response in enumerate(responses):
        assert response.id == 100 + idx
        assert response.result["id"] == 100 + idx
        assert response.result["method"] == "debug/echo"
        assert response.result["params"]["requestIndex"] == idx


def test_response_error(stdio):
    request = JSONRPCRequest(id=100, method="debug/echo_error_string")
    response = stdio.send_request(request, timeout=5)
    assert response.error is not None
    assert response.error.code == -1
    echoed = json.loads(response.error.message)
    assert echoed["method"] == "debug/echo_error_string"
    assert echoed["id"] == 100
    assert echoed["jsonrpc"] == "2.0"


def test_send_request_with_string_id(stdio):
    request = JSONRPCRequest(
        id="request-123",
        method="debug/echo",
        params={"string": "string id test", "array": [4, 5, 6]},
    )
    response = stdio.send_request(request, timeout=5)
    result = response.result
    assert result["jsonrpc"] == "2.0"
    assert result["id"] == "request-123"
    assert result["method"] == "debug/echo"
    assert result["params"]["string"] == "string id test"
    assert len(result["params"]["array"]) == 3


def test_stderr_carries_server_log():
    transport = _mock_transport()
    transport.start()
    try:
        record = json.loads(transport.stderr.readline())
        assert record["msg"] == "launch successful"
    finally:
        transport.close()


def test_invalid_command():
    transport = StdioTransport("non_existent_command_for_mcpclient_tests")
    with pytest.raises(TransportError):
        transport.start()


def test_request_before_start():
    transport = _mock_transport()
    with pytest.raises(TransportError, match="stdio client not started"):
        transport.send_request(JSONRPCRequest(id=99, method="ping"), timeout=0.2)


def test_request_after_close():
    transport = _mock_transport()
    transport.start()
    transport.close()
    with pytest.raises(TransportError):
        transport.send_request(JSONRPCRequest(id=1, method="ping"), timeout=1)
    transport.close()


def test_env_is_passed_to_process():
    script = (
        "import json, os, sys\n"
        "req = json.loads(sys.stdin.readline())\n"
        "out = {'jsonrpc': '2.0', 'id': req['id'], 'result': os.environ.get('MCP_TEST_VALUE')}\n"
        "sys.stdout.write(json.dumps(out) + '\\n')\n"
        "sys.stdout.flush()\n"
    )
    transport = StdioTransport(sys.executable, ["MCP_TEST_VALUE=from-env"], ["-c", script])
    transport.start()
    try:
        response = transport.send_request(JSONRPCRequest(id=1, method="env"), timeout=5)
        assert response.result == "from-env"
    finally:
        transport.close()


def test_close_reports_failed_exit():
    script = "import sys\nsys.stdin.read()\nsys.exit(3)\n"
    transport = StdioTransport(sys.executable, None, ["-c", script])
    transport.start()
    with pytest.raises(TransportError, match="status 3"):
        transport.close()


def test_from_streams_routes_responses_and_notifications():
    server_out_r, server_out_w = os.pipe()
    client_out_r, client_out_w = os.pipe()
    to_client = os.fdopen(server_out_w, "wb")
    from_client = os.fdopen(client_out_r, "rb")
    logging_stream = io.BytesIO(b"log line\n")

    transport = StdioTransport.from_streams(
        os.fdopen(server_out_r, "rb"), os.fdopen(client_out_w, "wb"), logging_stream
    )
    assert transport.stderr is logging_stream
    transport.start()

    notifications = queue.Queue()
    transport.set_notification_handler(notifications.put)

    def fake_server():
        req = json.loads(from_client.readline())
        to_client.write(b"not json\n")
        to_client.write(
            json.dumps({"jsonrpc": "2.0", "method": "note", "params": {"n": 1}}).encode() + b"\n"
        )
        to_client.write(
            json.dumps({"jsonrpc": "2.0", "id": req["id"], "result": {"ok": True}}).encode() + b"\n"
        )
        to_client.flush()

    server = threading.Thread(target=fake_server)
    server.start()
    try:
        response = transport.send_request(JSONRPCRequest(id=42, method="work"), timeout=5)
        assert response.id == 42
        assert response.result == {"ok": True}
        note = notifications.get(timeout=1)
        assert note.method == "note"
        assert note.params == {"n": 1}
    finally:
        server.join()
        transport.close()
        to_client.close()
        from_client.close()