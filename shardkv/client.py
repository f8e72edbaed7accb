"""Client for the sharded key/value service.

The clerk asks the shard controller for the current configuration, maps a
key to its shard and the shard to a group, and talks to that group.
"""

from __future__ import annotations

import threading
from typing import Any, Protocol

from shardkv.rpc import Err
from shardkv.shardcfg import ShardConfig, key_to_shard
from shardkv.shardgrp_client import Clerk as GroupClerk


class _Ctrler(Protocol):
    def query(self) -> ShardConfig:
        """Return the latest committed configuration."""


class Clerk:
    """Routes Get and Put to the group that currently holds the key's shard."""

    def __init__(self, clnt: Any, sck: _Ctrler) -> None:
        self._clnt = clnt
        self._sck = sck
        self._lock = threading.Lock()
        self._rcks: dict[int, GroupClerk] = {}
        self._cfg = sck.query()
        for gid, srvs in self._cfg.groups.items():
            self._rcks[gid] = GroupClerk(clnt, srvs)

    def get_clerk(self, gid: int) -> GroupClerk | None:
        """Return the clerk for group `gid`, or None if none is known."""
        with self._lock:
            return self._rcks.get(gid)

    def _route(self, key: str) -> GroupClerk | None:
        with self._lock:
            gid = self._cfg.shards[key_to_shard(key)]
            return self._rcks.get(gid)

    def _refresh_config(self) -> None:
        cfg = self._sck.query()
        with self._lock:
            self._cfg = cfg
            for gid, srvs in cfg.groups.items():
                if gid not in self._rcks:
                    self._rcks[gid] = GroupClerk(self._clnt, srvs)

    def get(self, key: str) -> tuple[str, int, Err]:
        """Return (value, version, err), where err is OK or ERR_NO_KEY."""
        while True:
            grp = self._route(key)
            if grp is not None:
                value, version, err = grp.get(key)
                if err in (Err.OK, Err.ERR_NO_KEY):
                    return value, version, err
            self._refresh_config()

    def put(self, key: str, value: str, version: int) -> Err:
        """Conditionally store `value`; ERR_MAYBE if an earlier try may have applied."""
        maybe_lost = False
        while True:
            grp = self._route(key)
            if grp is not None:
                err, ambiguous = grp.put(key, value, version)
                maybe_lost = maybe_lost or ambiguous
                if err in (Err.OK, Err.ERR_MAYBE):
                    return err
                if err == Err.ERR_VERSION:
                    return Err.ERR_MAYBE if maybe_lost else err
            self._refresh_config()