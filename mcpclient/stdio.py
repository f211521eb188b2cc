"""A transport that speaks newline-delimited JSON-RPC over a subprocess's stdio."""

from __future__ import annotations

import io
import json
import logging
import os
import subprocess
import threading
from collections.abc import Iterable, Mapping
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import IO, Any, Optional, Union

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

EnvSpec = Union[Mapping[str, str], Iterable[str], None]


def _parse_env(env: EnvSpec) -> dict[str, str]:
    if env is None:
        return {}
    if isinstance(env, Mapping):
        return {str(k): str(v) for k, v in env.items()}
    parsed = {}
    for entry in env:
        name, sep, value = entry.partition("=")
        if sep:
            parsed[name] = value
    return parsed


class StdioTransport(Transport):
    """Launches a server process and exchanges JSON-RPC lines over its stdin and stdout."""

    def __init__(self, command: str = "", env: EnvSpec = None, args: Iterable[str] = ()) -> None:
        self._command = command
        self._args = list(args)
        self._env = env
        self._process: Optional[subprocess.Popen] = None
        self._stdin: Optional[IO[Any]] = None
        self._stdout: Optional[IO[Any]] = None
        self._stderr: Optional[IO[Any]] = None
        self._pending: dict[str, Future] = {}
        self._pending_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._handler: Optional[NotificationHandler] = None
        self._handler_lock = threading.Lock()
        self._closed = threading.Event()
        self._reader: Optional[threading.Thread] = None

    @classmethod
    def from_streams(cls, input: IO[Any], output: IO[Any], logging: Optional[IO[Any]]) -> "StdioTransport":
        """Use existing streams instead of a subprocess: read from input, write to output."""
        transport = cls()
        transport._stdout = input
        transport._stdin = output
        transport._stderr = logging
        return transport

    def start(self) -> None:
        self._spawn()
        if self._stdout is None:
            raise TransportError("no command or streams to start")
        self._reader = threading.Thread(target=self._read_loop, name="stdio-reader", daemon=True)
        self._reader.start()

    def _spawn(self) -> None:
        if not self._command:
            return
        env = dict(os.environ)
        env.update(_parse_env(self._env))
        try:
            process = subprocess.Popen(
                [self._command, *self._args],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            raise TransportError(f"failed to start command: {exc}") from exc
        self._process = process
        self._stdin = process.stdin
        self._stdout = process.stdout
        self._stderr = process.stderr

    def _read_loop(self) -> None:
        stream = self._stdout
        while not self._closed.is_set():
            try:
                line = stream.readline()
            except (OSError, ValueError) as exc:
                if not self._closed.is_set():
                    log.warning("error reading response: %s", exc)
                break
            if not line:
                break
            self._dispatch(line)
        self._fail_pending(TransportError("connection has been closed"))

    def _dispatch(self, line: Union[bytes, str]) -> None:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        try:
            message = json.loads(line)
        except ValueError:
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

    def _write(self, text: str, what: str) -> None:
        stream = self._stdin
        with self._write_lock:
            try:
                if isinstance(stream, io.TextIOBase):
                    stream.write(text)
                else:
                    stream.write(text.encode("utf-8"))
                stream.flush()
            except (OSError, ValueError) as exc:
                raise TransportError(f"failed to write {what}: {exc}") from exc

    @staticmethod
    def _encode(message: dict[str, Any]) -> str:
        try:
            return json.dumps(message, separators=(",", ":")) + "\n"
        except (TypeError, ValueError) as exc:
            raise TransportError(f"failed to marshal message: {exc}") from exc

    def send_request(self, request: JSONRPCRequest, timeout: Optional[float] = None) -> JSONRPCResponse:
        if self._stdin is None:
            raise TransportError("stdio client not started")
        if self._closed.is_set():
            raise TransportError("transport has been closed")
        text = self._encode(request.to_dict())
        key = id_key(request.id)

        future: Future = Future()
        with self._pending_lock:
            self._pending[key] = future

        def forget() -> None:
            with self._pending_lock:
                if self._pending.get(key) is future:
                    del self._pending[key]

        try:
            self._write(text, "request")
        except TransportError:
            forget()
            raise

        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            forget()
            raise TimeoutError(f"no response to request {request.id!r} in time") from None

    def send_notification(self, notification: JSONRPCNotification) -> None:
        if self._stdin is None:
            raise TransportError("stdio client not started")
        self._write(self._encode(notification.to_dict()), "notification")

    def set_notification_handler(self, handler: Optional[NotificationHandler]) -> None:
        with self._handler_lock:
            self._handler = handler

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._fail_pending(TransportError("transport has been closed"))

        if self._stdin is not None:
            try:
                self._stdin.close()
            except OSError as exc:
                raise TransportError(f"failed to close stdin: {exc}") from exc
        if self._stderr is not None:
            try:
                self._stderr.close()
            except OSError as exc:
                raise TransportError(f"failed to close stderr: {exc}") from exc

        if self._process is not None:
            status = self._process.wait()
            if self._reader is not None:
                self._reader.join(timeout=5)
            if self._stdout is not None:
                self._stdout.close()
            if status != 0:
                raise TransportError(f"process exited with status {status}")

    @property
    def stderr(self) -> Optional[IO[Any]]:
        """The stream carrying the server's stderr output."""
        return self._stderr