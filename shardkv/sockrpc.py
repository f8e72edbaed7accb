"""RPC between processes over UNIX-domain sockets, built on the demux layer."""

from __future__ import annotations

import logging
import os
import pickle
import re
import socket
import tempfile
import threading
import time
from typing import Any, Callable

from shardkv.demux import DemuxClient, DemuxServer, Transport, TransportClosed

log = logging.getLogger(__name__)

MAX_RETRY = 100
RETRY_INTERVAL = 0.1
_ACCEPT_POLL = 0.1


def sock_name(end_name: str) -> str:
    """Path of the socket file for an end name."""
    return os.path.join(tempfile.gettempdir(), f"shardkv-{end_name}")


def _snake(name: str) -> str:
    s = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", name)
    return re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s).lower()


def _dial(srv_end: str, retries: int, interval: float) -> socket.socket:
    last: OSError | None = None
    for attempt in range(retries):
        conn = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            conn.connect(sock_name(srv_end))
            return conn
        except OSError as exc:
            conn.close()
            last = exc
        if attempt + 1 < retries:
            time.sleep(interval)
    raise ConnectionError(f"dial {srv_end}: {last}") from last


class RPCClient:
    """Client end of a socket RPC connection to one server."""

    def __init__(
        self,
        clnt_end: str,
        srv_end: str,
        *,
        retries: int = MAX_RETRY,
        retry_interval: float = RETRY_INTERVAL,
    ) -> None:
        self._clnt_end = clnt_end
        self._srv_end = srv_end
        conn = _dial(srv_end, retries, retry_interval)
        try:
            self._dmx = DemuxClient(clnt_end, srv_end, Transport(conn))
        except TransportClosed:
            conn.close()
            raise

    def server(self) -> str:
        return self._srv_end

    def close(self) -> None:
        self._dmx.close()

    def rpc(self, method: str, args: bytes) -> tuple[bytes | None, bool]:
        """Call `method` with encoded args; return (encoded reply, ok)."""
        try:
            rep, ok = self._dmx.send_receive(pickle.dumps((method, args)))
        except TransportClosed:
            return None, False
        return rep, ok

    def call(self, method: str, args: Any) -> Any:
        """Call `method` with `args`; return the reply, or None if the call failed."""
        rep, ok = self.rpc(method, pickle.dumps(args))
        if not ok or rep is None:
            return None
        return pickle.loads(rep)


class RPCServer:
    """Listens on a socket and dispatches "Service.Method" calls to registered objects."""

    def __init__(self, sock: str) -> None:
        self._sock = sock
        self._path = sock_name(sock)
        self._services: dict[str, Any] = {}
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            self._listener.bind(self._path)
            self._listener.listen()
        except OSError:
            self._listener.close()
            raise
        self._listener.settimeout(_ACCEPT_POLL)
        threading.Thread(target=self._listen, daemon=True, name=f"rpcsrv-{sock}").start()

    def name(self) -> str:
        return self._sock

    def add_service(self, svc: Any) -> None:
        """Register `svc`; its methods are reached as "<ClassName>.<MethodName>"."""
        with self._lock:
            self._services[type(svc).__name__] = svc

    def close(self) -> None:
        self._closed.set()
        self._listener.close()
        try:
            os.unlink(self._path)
        except FileNotFoundError:
            pass

    def _listen(self) -> None:
        while not self._closed.is_set():
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            conn.setblocking(True)
            try:
                DemuxServer(self._sock, self, Transport(conn))
            except TransportClosed as exc:
                log.warning("%s: connection dropped before init: %s", self._sock, exc)
                conn.close()

    def _lookup(self, method: str) -> Callable[[Any], Any] | None:
        svc_name, dot, meth = method.partition(".")
        if not dot:
            return None
        with self._lock:
            svc = self._services.get(svc_name)
        if svc is None:
            return None
        for attr in (meth, _snake(meth)):
            if attr and not attr.startswith("_"):
                handler = getattr(svc, attr, None)
                if callable(handler):
                    return handler
        return None

    def serve_request(self, clnt_end: str, data: bytes) -> tuple[bytes, bool]:
        """Decode a request, run the method and return (encoded reply, ok)."""
        try:
            method, args = pickle.loads(data)
            decoded = pickle.loads(args)
        except Exception as exc:  # any malformed payload is a failed call
            log.warning("%s: bad request from %s: %s", self._sock, clnt_end, exc)
            return b"", False
        handler = self._lookup(method)
        if handler is None:
            log.warning("%s: unknown method %s", self._sock, method)
            return b"", False
        try:
            reply = handler(decoded)
        except Exception:
            log.exception("%s: %s failed", self._sock, method)
            return b"", False
        return pickle.dumps(reply), True