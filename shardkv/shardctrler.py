"""Shard controller: stores configurations and drives shard migration under a lease."""

from __future__ import annotations

import itertools
import json
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Protocol

from shardkv.rpc import Err
from shardkv.shardcfg import NSHARDS, ShardConfig, from_string
from shardkv.shardgrp_client import Clerk

CUR_CFG_KEY = "curCfg"
NEXT_CFG_KEY = "nextCfg"
LEASE_KEY = "ctrlerLease"

RETRY_INTERVAL = 0.02
LEASE_TTL_NS = 800_000_000
LEASE_RENEW_INTERVAL = 0.2

_ids = itertools.count(1)
_ids_lock = threading.Lock()


class _KV(Protocol):
    def get(self, key: str) -> tuple[str, int, Err]: ...

    def put(self, key: str, value: str, version: int) -> Err: ...


@dataclass(frozen=True)
class LeaseState:
    """Controller leadership lease as stored in the key/value service."""

    holder: str = ""
    epoch: int = 0
    deadline_unix_nano: int = 0

    def __str__(self) -> str:
        return json.dumps(
            {
                "holder": self.holder,
                "epoch": self.epoch,
                "deadline_unix_nano": self.deadline_unix_nano,
            },
            separators=(",", ":"),
        )

    def active_at(self, now_ns: int) -> bool:
        return self.holder != "" and now_ns < self.deadline_unix_nano

    def held_by(self, holder: str, epoch: int) -> bool:
        return self.holder == holder and self.epoch == epoch


def lease_from_string(s: str) -> LeaseState:
    """Parse a lease; the empty string is the empty lease."""
    if s == "":
        return LeaseState()
    raw = json.loads(s)
    return LeaseState(
        holder=str(raw.get("holder", "")),
        epoch=int(raw.get("epoch", 0)),
        deadline_unix_nano=int(raw.get("deadline_unix_nano", 0)),
    )


class _LeaseSession:
    """Locally cached lease state, renewed by a background thread."""

    def __init__(self, sck: ShardCtrler, epoch: int, deadline_ns: int) -> None:
        self.sck = sck
        self.epoch = epoch
        self.stop = threading.Event()
        self.done = threading.Event()
        self._lock = threading.Lock()
        self._deadline_ns = deadline_ns
        self._lost = False

    def set_deadline(self, deadline_ns: int) -> None:
        with self._lock:
            self._deadline_ns = deadline_ns

    def mark_lost(self) -> None:
        with self._lock:
            self._lost = True

    def active(self) -> bool:
        with self._lock:
            return not self._lost and time.time_ns() < self._deadline_ns

    def deadline(self) -> int:
        with self._lock:
            return self._deadline_ns

    def close(self) -> None:
        self.stop.set()
        self.done.wait()
        # Release early so the next controller need not wait for expiry.
        if self.active():
            self.sck._release_lease(self)

    def __enter__(self) -> _LeaseSession:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class ShardCtrler:
    """Keeps shard configurations in a key/value service and applies changes."""

    def __init__(self, kv: _KV, clnt: Any) -> None:
        self._kv = kv
        self._clnt = clnt
        with _ids_lock:
            self._id = f"ctrler-{next(_ids)}"

    # --- configuration storage ---

    def init_config(self, cfg: ShardConfig) -> None:
        """Store the first configuration as both committed and pending."""
        self._ensure_config(CUR_CFG_KEY, cfg)
        self._ensure_config(NEXT_CFG_KEY, cfg)

    def _ensure_config(self, key: str, cfg: ShardConfig) -> None:
        want = str(cfg)
        while True:
            val, ver, err = self._kv.get(key)
            if err == Err.OK and val == want:
                return
            if err in (Err.OK, Err.ERR_NO_KEY):
                put_ver = ver if err == Err.OK else 0
                perr = self._kv.put(key, want, put_ver)
                if perr == Err.OK:
                    return
                if perr == Err.ERR_MAYBE:
                    got, _, gerr = self._kv.get(key)
                    if gerr == Err.OK and got == want:
                        return
            time.sleep(RETRY_INTERVAL)

    def query(self) -> ShardConfig:
        """Return the latest committed configuration."""
        while True:
            val, _, err = self._kv.get(CUR_CFG_KEY)
            if err == Err.OK:
                return from_string(val)
            time.sleep(RETRY_INTERVAL)

    def _read_config(self, lease: _LeaseSession, key: str) -> ShardConfig | None:
        while lease.active():
            val, _, err = self._kv.get(key)
            if err != Err.OK:
                time.sleep(RETRY_INTERVAL)
                continue
            return from_string(val)
        return None

    def _try_advance(
        self, lease: _LeaseSession, key: str, old: ShardConfig, new: ShardConfig
    ) -> bool:
        """Compare-and-swap `key` from `old` to `new`; False on a conflicting value."""
        want = str(new)
        old_s = str(old)
        while lease.active():
            val, ver, err = self._kv.get(key)
            if err != Err.OK:
                time.sleep(RETRY_INTERVAL)
                continue
            cur = from_string(val)
            if cur.num >= new.num:
                return True
            if cur.num != old.num or val != old_s:
                return False
            perr = self._kv.put(key, want, ver)
            if perr == Err.OK:
                return True
            if perr == Err.ERR_MAYBE:
                got, _, gerr = self._kv.get(key)
                if gerr == Err.OK:
                    if got == want:
                        return True
                    if got != old_s:
                        return False
            time.sleep(RETRY_INTERVAL)
        return False

    def _superseded(self, lease: _LeaseSession, target: int) -> bool:
        """True if `target` is committed or replaced, or the lease is gone."""
        cur = self._read_config(lease, CUR_CFG_KEY)
        if cur is None or cur.num >= target:
            return True
        nxt = self._read_config(lease, NEXT_CFG_KEY)
        return nxt is None or nxt.num > target

    # --- lease ---

    def _read_lease(self) -> tuple[LeaseState, int, Err]:
        val, ver, err = self._kv.get(LEASE_KEY)
        if err != Err.OK:
            return LeaseState(), 0, err
        return lease_from_string(val), ver, Err.OK

    def _write_lease(self, ver: int, old: LeaseState, new: LeaseState) -> bool:
        want = str(new)
        err = self._kv.put(LEASE_KEY, want, ver)
        if err == Err.OK:
            return True
        if err == Err.ERR_MAYBE:
            got, _, gerr = self._kv.get(LEASE_KEY)
            if gerr == Err.OK:
                if got == want:
                    return True
                if got != str(old):
                    return False
        return False

    def _acquire_lease(self) -> _LeaseSession:
        while True:
            now = time.time_ns()
            cur, ver, err = self._read_lease()
            if err not in (Err.OK, Err.ERR_NO_KEY):
                time.sleep(RETRY_INTERVAL)
                continue
            if cur.active_at(now) and cur.holder != self._id:
                time.sleep(RETRY_INTERVAL)
                continue
            # The epoch fences off any earlier holder.
            epoch = cur.epoch + 1
            if cur.holder == self._id and cur.active_at(now):
                epoch = cur.epoch
            nxt = LeaseState(self._id, epoch, now + LEASE_TTL_NS)
            if not self._write_lease(ver, cur, nxt):
                time.sleep(RETRY_INTERVAL)
                continue
            lease = _LeaseSession(self, nxt.epoch, nxt.deadline_unix_nano)
            threading.Thread(target=self._renew_loop, args=(lease,), daemon=True).start()
            return lease

    def _renew_loop(self, lease: _LeaseSession) -> None:
        try:
            while not lease.stop.wait(LEASE_RENEW_INTERVAL):
                if not lease.active() or not self._refresh_lease(lease):
                    lease.mark_lost()
                    return
        finally:
            lease.done.set()

    def _refresh_lease(self, lease: _LeaseSession) -> bool:
        while time.time_ns() < lease.deadline():
            now = time.time_ns()
            cur, ver, err = self._read_lease()
            if err == Err.OK:
                if not cur.held_by(self._id, lease.epoch) or not cur.active_at(now):
                    return False
                nxt = replace(cur, deadline_unix_nano=now + LEASE_TTL_NS)
                if self._write_lease(ver, cur, nxt):
                    lease.set_deadline(nxt.deadline_unix_nano)
                    return True
            if lease.stop.wait(RETRY_INTERVAL):
                return True
        return False

    def _release_lease(self, lease: _LeaseSession) -> None:
        for _ in range(3):
            cur, ver, err = self._read_lease()
            if err != Err.OK or not cur.held_by(self._id, lease.epoch):
                return
            if self._write_lease(ver, cur, LeaseState(epoch=cur.epoch)):
                return
            time.sleep(RETRY_INTERVAL)

    # --- migration ---

    def _clerk_factory(self) -> Callable[[int, list[str]], Clerk]:
        clerks: dict[int, Clerk] = {}
        lock = threading.Lock()

        def get(gid: int, srvs: list[str]) -> Clerk:
            with lock:
                if gid not in clerks:
                    clerks[gid] = Clerk(self._clnt, srvs)
                return clerks[gid]

        return get

    def _retry(self, lease: _LeaseSession, target: int, op: Callable[[], Err]) -> bool:
        """Repeat `op` while the lease holds; True once it succeeds."""
        while lease.active():
            err = op()
            if err == Err.OK:
                return True
            if err == Err.ERR_WRONG_GROUP and self._superseded(lease, target):
                return False
            time.sleep(RETRY_INTERVAL)
        return False

    def _move_shard(
        self,
        lease: _LeaseSession,
        old: ShardConfig,
        new: ShardConfig,
        shard: int,
        get_clerk: Callable[[int, list[str]], Clerk],
    ) -> None:
        old_gid = old.shards[shard]
        new_gid = new.shards[shard]
        if old_gid == new_gid:
            return

        if old_gid == 0:
            new_clerk = get_clerk(new_gid, new.groups.get(new_gid, []))
            self._retry(lease, new.num, lambda: new_clerk.install_shard(shard, None, new.num))
            return

        old_clerk = get_clerk(old_gid, old.groups.get(old_gid, []))
        if new_gid == 0:
            frozen = self._retry(
                lease, new.num, lambda: old_clerk.freeze_shard(shard, new.num)[1]
            )
            if frozen:
                self._retry(lease, new.num, lambda: old_clerk.delete_shard(shard, new.num))
            return

        new_clerk = get_clerk(new_gid, new.groups.get(new_gid, []))
        state: bytes | None = None
        while lease.active():
            # Freezing again is safe: the group treats repeats idempotently.
            state, err = old_clerk.freeze_shard(shard, new.num)
            if err == Err.OK:
                break
            if err == Err.ERR_WRONG_GROUP:
                if self._superseded(lease, new.num):
                    return
                state = None
                break
            time.sleep(RETRY_INTERVAL)

        installed = self._retry(
            lease, new.num, lambda: new_clerk.install_shard(shard, state, new.num)
        )
        if not installed and not lease.active():
            return
        if not installed:
            return
        self._retry(lease, new.num, lambda: old_clerk.delete_shard(shard, new.num))

    def _finish_config_change(
        self, lease: _LeaseSession, old: ShardConfig, new: ShardConfig
    ) -> None:
        """Move every changed shard, then commit `new` as the current config."""
        if old.num >= new.num or not lease.active():
            return
        get_clerk = self._clerk_factory()
        threads = [
            threading.Thread(
                target=self._move_shard, args=(lease, old, new, shard, get_clerk), daemon=True
            )
            for shard in range(NSHARDS)
            if old.shards[shard] != new.shards[shard]
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        if not lease.active():
            return
        self._try_advance(lease, CUR_CFG_KEY, old, new)

    # --- public operations ---

    def init_controller(self) -> None:
        """Complete any configuration change left unfinished by an earlier controller."""
        with self._acquire_lease() as lease:
            while lease.active():
                cur = self._read_config(lease, CUR_CFG_KEY)
                nxt = self._read_config(lease, NEXT_CFG_KEY)
                if cur is None or nxt is None or nxt.num <= cur.num:
                    return
                self._finish_config_change(lease, cur, nxt)

    def change_config_to(self, new: ShardConfig) -> None:
        """Move the service from the current configuration to `new`."""
        with self._acquire_lease() as lease:
            while lease.active():
                cur = self._read_config(lease, CUR_CFG_KEY)
                if cur is None or cur.num >= new.num:
                    return
                nxt = self._read_config(lease, NEXT_CFG_KEY)
                if nxt is None:
                    return
                if nxt.num < cur.num:
                    self._try_advance(lease, NEXT_CFG_KEY, nxt, cur)
                    continue
                if nxt.num > cur.num:
                    # An earlier controller left work behind; finish it first.
                    self._finish_config_change(lease, cur, nxt)
                    continue
                if cur.num + 1 != new.num:
                    time.sleep(RETRY_INTERVAL)
                    continue
                if not self._try_advance(lease, NEXT_CFG_KEY, cur, new):
                    continue
                self._finish_config_change(lease, cur, new)
                return