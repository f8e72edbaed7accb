import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from shardkv.demux import DemuxClient, DemuxServer, Transport, TransportClosed


class Reverser:
    def __init__(self):
        self.release = threading.Event()
        self.release.set()

    def serve_request(self, clnt_end, req):
        self.release.wait(5)
        if req.startswith(b"slow"):
            time.sleep((9 - int(req[-1:])) * 0.01)
        return req[::-1], req != b"fail"


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    handler = Reverser()
    client = DemuxClient("clerk-end", "srv-end", Transport(a))
    server = DemuxServer("srv-end", handler, Transport(b))
    yield client, server, handler
    handler.release.set()
    client.close()
    server.close()


def wait_until(cond, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(0.01)
    return cond()


def test_transport_round_trip():
    a, b = socket.socketpair()
    ta, tb = Transport(a), Transport(b)
    ta.write_call(42, b"payload", False)
    assert tb.read_call() == (42, b"payload", False)
    ta.write_call(3, None, True)
    assert tb.read_call() == (3, b"", True)
    ta.close()
    tb.close()


def test_transport_wire_format():
    a, b = socket.socketpair()
    Transport(a).write_call(7, b"ab", True)
    raw = b.recv(64)
    assert raw == b"\x07\x00\x00\x00" + b"\x07\x00\x00\x00\x01ab"
    a.close()
    b.close()

    c, d = socket.socketpair()
    d.sendall(b"\x07\x00\x00\x00" + b"\x09\x00\x00\x00\x00xy")
    reader = Transport(c)
    assert reader.read_call() == (9, b"xy", False)
    reader.close()
    d.close()


def test_read_after_peer_close_raises():
    a, b = socket.socketpair()
    b.close()
    with pytest.raises(TransportClosed):
        Transport(a).read_call()
    a.close()


def test_truncated_frame_raises():
    a, b = socket.socketpair()
    b.sendall(b"\x14\x00\x00\x00abc")
    b.close()
    with pytest.raises(TransportClosed):
        Transport(a).read_call()
    a.close()


def test_write_after_close_raises():
    a, b = socket.socketpair()
    t = Transport(a)
    t.close()
    with pytest.raises(TransportClosed):
        t.write_call(1, b"x", True)
    b.close()


def test_send_receive(pair):
    client, server, _ = pair
    assert client.send_receive(b"hello") == (b"olleh", True)
    assert server.clnt_end() == "clerk-end"


def test_ok_flag_is_carried(pair):
    client, _, _ = pair
    assert client.send_receive(b"fail") == (b"liaf", False)


def test_concurrent_replies_match_requests(pair):
    client, _, _ = pair
    reqs = [f"slow{i}".encode() for i in range(10)]
    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(client.send_receive, reqs))
    assert results == [(r[::-1], True) for r in reqs]


def test_closed_client_rejects_calls(pair):
    client, _, _ = pair
    client.close()
    assert client.is_closed()
    with pytest.raises(TransportClosed):
        client.send_receive(b"x")


def test_server_close_fails_outstanding_call(pair):
    client, server, handler = pair
    handler.release.clear()
    with ThreadPoolExecutor(max_workers=1) as pool:
        fut = pool.submit(client.send_receive, b"pending")
        time.sleep(0.1)
        server.close()
        with pytest.raises(TransportClosed):
            fut.result(timeout=5)
    assert wait_until(client.is_closed)