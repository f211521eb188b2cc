# mcpclient

A client for the Model Context Protocol (MCP). It speaks JSON-RPC 2.0 to an
MCP server over one of three transports:

- **stdio**: `mcpclient.stdio.StdioTransport` starts the server as a
  subprocess. It exchanges newline-delimited JSON on the server's standard
  input and output. `StdioTransport.from_streams(input, output, logging)`
  uses streams you already have instead of starting a process.
- **SSE**: `mcpclient.sse.SSETransport` keeps a Server-Sent Events stream
  open. It posts requests to the endpoint that the server announces in an
  `endpoint` event. It accepts `headers`, `header_func` and `http_client`
  (an `httpx.Client`) keyword arguments.
- **streamable HTTP**: `mcpclient.streamable_http.StreamableHTTPTransport`
  sends each message as its own HTTP POST. The reply comes back as plain
  JSON or as an SSE stream. The transport keeps the `Mcp-Session-Id` that
  the server returns on `initialize` and exposes it as `session_id`. It
  accepts `headers`, `header_func`, `timeout` and `http_client` keyword
  arguments.

All three transports implement the abstract `mcpclient.jsonrpc.Transport`.
The message types are `JSONRPCRequest`, `JSONRPCResponse` and
`JSONRPCNotification`, all in `mcpclient.jsonrpc`.

## Installation

```
pip install .
```

## Using the library

```python
from mcpclient.client import new_stdio_client

client = new_stdio_client("python", [], "server.py")
try:
    result = client.initialize(
        "2025-03-26",
        {"name": "example-client", "version": "1.0.0"},
        {},
        30.0,
    )
    print(result["serverInfo"]["name"])

    for tool in client.list_tools(None, 30.0)["tools"]:
        print(tool["name"], tool.get("description", ""))

    reply = client.call_tool("echo", {"message": "hello"}, 30.0)
    print(reply["content"])
finally:
    client.close()
```

Results come back as the JSON objects that the server sent, as plain dicts.

### Starting a client

- `new_stdio_client` starts the transport itself. Its `env` argument takes
  either a mapping or `"NAME=value"` strings. These are added to the current
  environment.
- `new_sse_client` and `new_streamable_http_client` pass their keyword
  arguments on to the transport. Call `client.start()` on these clients
  before `initialize`.
- `Client` also works as a context manager, which closes it on exit.

### Errors

- Before a client is initialized, every request except `initialize` raises
  `mcpclient.client.ClientError`.
- An error reply from the server raises `mcpclient.jsonrpc.RPCError`. It
  carries the server's `code`, `message` and `data`.
- A transport failure raises `mcpclient.jsonrpc.TransportError`.
- A request that gets no answer within its `timeout` raises `TimeoutError`.

### Listing and notifications

The `list_*` methods follow `nextCursor` and return every page joined
together. The `list_*_by_page` methods return a single page. To receive
server notifications, register callbacks with
`client.on_notification(handler)`. They run in the order they were added.

### Transport helpers

- `get_stderr(client)` returns the server's stderr stream for a stdio
  client, and `None` for any other client.
- `get_endpoint(client)` returns the announced message URL of an SSE
  client.

## Command line

`mcpclient` connects to a server and initializes it. It then lists the
server's tools and resources, if the server offers them:

```
mcpclient --stdio "python server.py"
mcpclient --http http://localhost:8080/mcp
```

Give exactly one of `--stdio` and `--http`. The `--stdio` command is split
on spaces. Single or double quotes group words together; escapes are not
supported. The server's stderr output is echoed with a `[Server]` prefix.
The whole run is limited to 30 seconds.

## What this package does not do

- This package is only a client. It contains no MCP server and no way of
  defining tools, resources or prompts.
- The streamable HTTP transport does not support the following:
  - batching
  - resuming a stream
  - listening for server messages outside a request
  - requests sent from the server to the client

## Running the tests

```
pip install ".[test]"
pytest
```