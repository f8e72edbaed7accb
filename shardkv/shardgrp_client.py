"""Clerk that talks to the servers of one shard group."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Iterable, Protocol

from shardkv.rpc import (
    DeleteShardArgs,
    Err,
    FreezeShardArgs,
    GetArgs,
    InstallShardArgs,
    PutArgs,
)

log = logging.getLogger(__name__)

TIMEOUT = 10.0
SEND_INTERVAL = 0.05


class _Caller(Protocol):
    def call(self, server: str, method: str, args: Any) -> Any:
        """Deliver `args` to `method` on `server`; return the reply or None if lost."""


class Clerk:
    """Sends requests to a shard group, finding and remembering its leader."""

    def __init__(
        self,
        clnt: _Caller,
        servers: Iterable[str],
        *,
        timeout: float = TIMEOUT,
        send_interval: float = SEND_INTERVAL,
    ) -> None:
        self._clnt = clnt
        self._servers = list(servers)
        self._timeout = timeout
        self._send_interval = send_interval
        self._lock = threading.Lock()
        self._leader = 0

    def leader(self) -> int:
        """Index of the server that last answered as leader."""
        with self._lock:
            return self._leader

    def _target(self) -> str:
        with self._lock:
            return self._servers[self._leader]

    def _rotate(self) -> None:
        with self._lock:
            self._leader = (self._leader + 1) % len(self._servers)

    def get(self, key: str) -> tuple[str, int, Err]:
        """Return (value, version, err); ERR_WRONG_GROUP after the timeout."""
        args = GetArgs(key)
        start = time.monotonic()
        while True:
            if time.monotonic() - start > self._timeout:
                # The shard may have moved away, or the group is unreachable.
                return "", 0, Err.ERR_WRONG_GROUP
            reply = self._clnt.call(self._target(), "KVServer.Get", args)
            if reply is not None and reply.err != Err.ERR_WRONG_LEADER:
                if reply.err in (Err.OK, Err.ERR_WRONG_GROUP):
                    return reply.value, reply.version, reply.err
                if reply.err != Err.ERR_NO_KEY:
                    log.warning("unexpected error: %s", reply.err)
                return "", 0, reply.err
            self._rotate()
            time.sleep(self._send_interval)

    def put(self, key: str, value: str, version: int) -> tuple[Err, bool]:
        """Return (err, maybe_lost): maybe_lost is True if a request may have applied."""
        args = PutArgs(key, value, version)
        start = time.monotonic()
        maybe_lost = False
        while True:
            if time.monotonic() - start > self._timeout:
                return Err.ERR_WRONG_GROUP, maybe_lost
            reply = self._clnt.call(self._target(), "KVServer.Put", args)
            if reply is not None and reply.err != Err.ERR_WRONG_LEADER:
                if reply.err == Err.ERR_VERSION:
                    if maybe_lost:
                        return Err.ERR_MAYBE, True
                    return Err.ERR_VERSION, False
                if reply.err == Err.ERR_WRONG_GROUP:
                    return Err.ERR_WRONG_GROUP, maybe_lost
                if reply.err == Err.OK:
                    return Err.OK, False
                log.warning("unexpected error: %s", reply.err)
                return reply.err, maybe_lost
            self._rotate()
            if reply is None:
                maybe_lost = True
            time.sleep(self._send_interval)

    def _call_until_answer(self, method: str, args: Any) -> Any:
        """Retry until a server answers with OK or ERR_WRONG_GROUP."""
        while True:
            reply = self._clnt.call(self._target(), method, args)
            if reply is not None:
                if reply.err == Err.ERR_WRONG_LEADER:
                    self._rotate()
                    continue
                if reply.err in (Err.OK, Err.ERR_WRONG_GROUP):
                    return reply
            else:
                time.sleep(self._send_interval)
            self._rotate()

    def freeze_shard(self, shard: int, num: int) -> tuple[bytes | None, Err]:
        """Freeze a shard at config `num`; return its state and the outcome."""
        reply = self._call_until_answer("KVServer.FreezeShard", FreezeShardArgs(shard, num))
        return reply.state, reply.err

    def install_shard(self, shard: int, state: bytes | None, num: int) -> Err:
        reply = self._call_until_answer(
            "KVServer.InstallShard", InstallShardArgs(shard, state, num)
        )
        return reply.err

    def delete_shard(self, shard: int, num: int) -> Err:
        reply = self._call_until_answer("KVServer.DeleteShard", DeleteShardArgs(shard, num))
        return reply.err