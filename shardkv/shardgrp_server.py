"""Shard group key/value server: per-shard storage plus shard migration ops."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Mapping

from shardkv.persister import Persister
from shardkv.rpc import (
    DeleteShardArgs,
    DeleteShardReply,
    Err,
    FreezeShardArgs,
    FreezeShardReply,
    GetArgs,
    GetReply,
    InstallShardArgs,
    InstallShardReply,
    PutArgs,
    PutReply,
)
from shardkv.shardcfg import GID1, NSHARDS, NUM_FIRST, key_to_shard

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValueEntry:
    value: str
    version: int


def encode_shard(entries: Mapping[str, ValueEntry]) -> bytes:
    """Serialise one shard's key/value entries."""
    payload = {k: [e.value, e.version] for k, e in entries.items()}
    return json.dumps(payload, sort_keys=True).encode("utf-8")


def decode_shard(state: bytes) -> dict[str, ValueEntry]:
    """Parse bytes made by encode_shard; raise ValueError if malformed."""
    try:
        raw = json.loads(state.decode("utf-8"))
        if raw is None:
            return {}
        return {str(k): ValueEntry(str(v), int(ver)) for k, (v, ver) in raw.items()}
    except (UnicodeDecodeError, AttributeError, TypeError, ValueError) as exc:
        raise ValueError(f"malformed shard state: {exc}") from exc


class KVServer:
    """Key/value state machine for one member of a shard group."""

    def __init__(self, gid: int, me: int) -> None:
        self.gid = gid
        self.me = me
        self._lock = threading.RLock()
        self._data: dict[int, dict[str, ValueEntry]] = {}
        self._frozen: dict[int, bool] = {}
        self._shard_num: dict[int, int] = {}
        self._handlers = {
            GetArgs: self._get_op,
            PutArgs: self._put_op,
            DeleteShardArgs: self._delete_shard_op,
            InstallShardArgs: self._install_shard_op,
            FreezeShardArgs: self._freeze_shard_op,
        }

    def _own_all_shards(self) -> None:
        with self._lock:
            for shard in range(NSHARDS):
                self._data[shard] = {}
                self._shard_num[shard] = NUM_FIRST

    def do_op(self, req: Any) -> Any:
        """Apply one request to the state and return its reply."""
        handler = self._handlers.get(type(req))
        if handler is None:
            raise TypeError(f"{self.me}: unsupported request type {type(req).__name__}")
        return handler(req)

    def snapshot(self) -> bytes:
        with self._lock:
            payload = {
                "data": {
                    str(s): {k: [e.value, e.version] for k, e in kv.items()}
                    for s, kv in self._data.items()
                },
                "frozen": {str(s): f for s, f in self._frozen.items()},
                "shard_num": {str(s): n for s, n in self._shard_num.items()},
            }
            return json.dumps(payload, sort_keys=True).encode("utf-8")

    def restore(self, data: bytes) -> None:
        """Replace the state with a snapshot; a bad snapshot leaves it unchanged."""
        with self._lock:
            try:
                raw = json.loads(data.decode("utf-8"))
                kvmap = {
                    int(s): {k: ValueEntry(str(v), int(ver)) for k, (v, ver) in kv.items()}
                    for s, kv in raw["data"].items()
                }
                frozen = {int(s): bool(f) for s, f in raw["frozen"].items()}
                shard_num = {int(s): int(n) for s, n in raw["shard_num"].items()}
            except (UnicodeDecodeError, KeyError, TypeError, ValueError, AttributeError):
                log.warning("KVstorage restore failed: bad snapshot of len %d", len(data))
                return
            self._data = kvmap
            self._frozen = frozen
            self._shard_num = shard_num

    def _owns_shard(self, shard: int) -> bool:
        return shard in self._data and not self._frozen.get(shard, False)

    def _get_op(self, args: GetArgs) -> GetReply:
        with self._lock:
            shard = key_to_shard(args.key)
            if not self._owns_shard(shard):
                return GetReply(err=Err.ERR_WRONG_GROUP)
            entry = self._data[shard].get(args.key)
            if entry is None:
                return GetReply(err=Err.ERR_NO_KEY)
            return GetReply(value=entry.value, version=entry.version, err=Err.OK)

    def _put_op(self, args: PutArgs) -> PutReply:
        with self._lock:
            shard = key_to_shard(args.key)
            if not self._owns_shard(shard):
                return PutReply(err=Err.ERR_WRONG_GROUP)
            entries = self._data[shard]
            entry = entries.get(args.key)
            current = 0 if entry is None else entry.version
            if args.version != current:
                return PutReply(err=Err.ERR_VERSION)
            entries[args.key] = ValueEntry(args.value, args.version + 1)
            return PutReply(err=Err.OK)

    def _freeze_shard_op(self, args: FreezeShardArgs) -> FreezeShardReply:
        with self._lock:
            shard = args.shard
            known = self._shard_num.get(shard, 0)
            if args.num < known:
                return FreezeShardReply(err=Err.ERR_WRONG_GROUP)
            if args.num == known:
                # Already migrated under this config: a retrying controller gets OK.
                return FreezeShardReply(num=args.num, err=Err.OK)
            self._frozen[shard] = True
            entries = self._data.setdefault(shard, {})
            return FreezeShardReply(state=encode_shard(entries), num=args.num, err=Err.OK)

    def _install_shard_op(self, args: InstallShardArgs) -> InstallShardReply:
        with self._lock:
            shard = args.shard
            known = self._shard_num.get(shard, 0)
            if args.num < known:
                return InstallShardReply(err=Err.ERR_WRONG_GROUP)
            if args.num == known:
                if self._owns_shard(shard):
                    return InstallShardReply(err=Err.OK)
                return InstallShardReply(err=Err.ERR_WRONG_GROUP)
            if not args.state:
                entries: dict[str, ValueEntry] = {}
            else:
                try:
                    entries = decode_shard(args.state)
                except ValueError:
                    log.warning("install_shard: decode failed, shard %d", shard)
                    return InstallShardReply(err=Err.ERR_WRONG_GROUP)
            self._data[shard] = entries
            self._shard_num[shard] = args.num
            self._frozen[shard] = False
            return InstallShardReply(err=Err.OK)

    def _delete_shard_op(self, args: DeleteShardArgs) -> DeleteShardReply:
        with self._lock:
            shard = args.shard
            known = self._shard_num.get(shard, 0)
            if args.num < known:
                return DeleteShardReply(err=Err.ERR_WRONG_GROUP)
            if args.num == known:
                return DeleteShardReply(err=Err.OK)
            if not self._frozen.get(shard, False):
                # The freeze never took effect; the controller must freeze first.
                return DeleteShardReply(err=Err.ERR_WRONG_GROUP)
            self._data.pop(shard, None)
            self._shard_num[shard] = args.num
            return DeleteShardReply(err=Err.OK)

    def get(self, args: GetArgs) -> GetReply:
        return self.do_op(args)

    def put(self, args: PutArgs) -> PutReply:
        return self.do_op(args)

    def freeze_shard(self, args: FreezeShardArgs) -> FreezeShardReply:
        """Reject further Get/Put on the shard and return its contents."""
        return self.do_op(args)

    def install_shard(self, args: InstallShardArgs) -> InstallShardReply:
        return self.do_op(args)

    def delete_shard(self, args: DeleteShardArgs) -> DeleteShardReply:
        return self.do_op(args)


def start_server_shard_grp(gid: int, me: int, persister: Persister) -> KVServer:
    """Create a server for group `gid`, recovering from `persister` if it has state."""
    kv = KVServer(gid, me)
    if persister.raft_state_size() == 0 and persister.snapshot_size() == 0:
        if gid == GID1:
            # The first configuration gives every shard to GID1.
            kv._own_all_shards()
    elif persister.snapshot_size() > 0:
        kv.restore(persister.read_snapshot())
    return kv