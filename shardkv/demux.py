"""Multiplex tagged calls over one stream connection and match replies to requests."""

from __future__ import annotations

import itertools
import logging
import queue
import socket
import struct
import threading
from typing import Protocol

log = logging.getLogger(__name__)

MSGLEN = 65536

_LEN = struct.Struct("<I")
_HDR = struct.Struct("<IB")


class TransportClosed(ConnectionError):
    """The connection is closed or broke while reading or writing."""


class Transport:
    """Length-prefixed frames carrying (tag, data, ok) over a socket."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    def _recv_exact(self, n: int) -> bytes:
        chunks = []
        remaining = n
        while remaining:
            try:
                chunk = self._sock.recv(min(remaining, MSGLEN))
            except OSError as exc:
                raise TransportClosed(str(exc)) from exc
            if not chunk:
                raise TransportClosed("connection closed")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def read_call(self) -> tuple[int, bytes, bool]:
        """Read one frame; raise TransportClosed on end of stream or a short read."""
        (n,) = _LEN.unpack(self._recv_exact(_LEN.size))
        if n < _HDR.size:
            raise TransportClosed("short message")
        body = self._recv_exact(n)
        tag, ok = _HDR.unpack_from(body)
        return tag, body[_HDR.size:], bool(ok)

    def write_call(self, tag: int, data: bytes | None, ok: bool) -> None:
        body = _HDR.pack(tag & 0xFFFFFFFF, 1 if ok else 0) + (data or b"")
        try:
            self._sock.sendall(_LEN.pack(len(body)) + body)
        except OSError as exc:
            raise TransportClosed(str(exc)) from exc

    def close(self) -> None:
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


_Slot = "queue.SimpleQueue[tuple[bytes | None, bool, Exception | None]]"


class _CallMap:
    """Outstanding calls indexed by tag."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._closed = False
        self._calls: dict[int, queue.SimpleQueue] = {}

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def is_closed(self) -> bool:
        with self._lock:
            return self._closed

    def put(self, tag: int, slot: queue.SimpleQueue) -> None:
        with self._lock:
            if self._closed:
                raise TransportClosed("conn closed")
            self._calls[tag] = slot

    def remove(self, tag: int) -> queue.SimpleQueue | None:
        with self._lock:
            return self._calls.pop(tag, None)

    def outstanding(self) -> list[int]:
        with self._lock:
            return list(self._calls)


class DemuxClient:
    """Sends requests over a transport and waits for the reply with the same tag."""

    def __init__(self, clnt: str, srv: str, transport: Transport) -> None:
        self._calls = _CallMap()
        self._trans = transport
        self._tag_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._tags = itertools.count()
        self._clnt_end = clnt
        self._srv_end = srv
        transport.write_call(self._tag(), clnt.encode("utf-8"), True)
        threading.Thread(target=self._reader, daemon=True, name=f"dmx-{srv}").start()

    def _tag(self) -> int:
        with self._tag_lock:
            return next(self._tags) & 0xFFFFFFFF

    def _deliver(
        self, tag: int, data: bytes | None, ok: bool, err: Exception | None
    ) -> None:
        slot = self._calls.remove(tag)
        if slot is None:
            log.error("%s: reply for tag %d has no matching request", self._srv_end, tag)
            return
        slot.put((data, ok, err))

    def _reader(self) -> None:
        while True:
            try:
                tag, data, ok = self._trans.read_call()
            except TransportClosed:
                self._calls.close()
                break
            self._deliver(tag, data, ok, None)
        for tag in self._calls.outstanding():
            self._deliver(tag, None, False, TransportClosed("reader reply fail"))

    def send_receive(self, data: bytes) -> tuple[bytes, bool]:
        """Send a request and return (reply, ok); raise TransportClosed if the link is gone."""
        tag = self._tag()
        slot: queue.SimpleQueue = queue.SimpleQueue()
        self._calls.put(tag, slot)
        with self._write_lock:
            try:
                self._trans.write_call(tag, data, True)
            except TransportClosed as exc:
                # The reader will fail the call once it sees the broken link.
                log.debug("%s: write of tag %d failed: %s", self._srv_end, tag, exc)
        rep, ok, err = slot.get()
        if err is not None:
            raise err
        return rep or b"", ok

    def close(self) -> None:
        if self._calls.is_closed():
            return
        try:
            self._trans.close()
        except OSError as exc:
            log.warning("%s: close transport: %s", self._srv_end, exc)
        self._calls.close()

    def is_closed(self) -> bool:
        return self._calls.is_closed()


class _Server(Protocol):
    def serve_request(self, clnt_end: str, req: bytes) -> tuple[bytes, bool]:
        """Handle one request and return (reply, ok)."""


class DemuxServer:
    """Serves each incoming request in its own thread and writes back tagged replies."""

    def __init__(self, srv_end: str, srv: _Server, transport: Transport) -> None:
        self._srv_end = srv_end
        self._srv = srv
        self._trans = transport
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._closed = False
        _, data, _ = transport.read_call()
        self._clnt_end = data.decode("utf-8")
        threading.Thread(target=self._reader, daemon=True, name=f"dmxsrv-{srv_end}").start()

    def clnt_end(self) -> str:
        """Name the client announced when it connected."""
        return self._clnt_end

    def _set_closed(self) -> bool:
        with self._state_lock:
            was = self._closed
            self._closed = True
            return was

    def _reader(self) -> None:
        while True:
            try:
                tag, req, _ = self._trans.read_call()
            except TransportClosed as exc:
                if not self._set_closed():
                    log.debug("%s: client %s gone: %s", self._srv_end, self._clnt_end, exc)
                    self._trans.close()
                return
            threading.Thread(target=self._serve, args=(tag, req), daemon=True).start()

    def _serve(self, tag: int, req: bytes) -> None:
        rep, ok = self._srv.serve_request(self._clnt_end, req)
        with self._write_lock:
            try:
                self._trans.write_call(tag, rep, ok)
            except TransportClosed:
                log.debug("%s: reply %d to %s lost", self._srv_end, tag, self._clnt_end)

    def close(self) -> None:
        if self._set_closed():
            return
        log.info("%s: close client %s", self._srv_end, self._clnt_end)
        try:
            self._trans.close()
        except OSError as exc:
            log.warning("%s: close transport for %s: %s", self._srv_end, self._clnt_end, exc)