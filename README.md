# shardkv

Building blocks of a sharded key/value store. Keys are hashed into a fixed
number of shards (`shardkv.shardcfg.key_to_shard`, FNV-1a modulo
`NSHARDS = 12`), shards are assigned to server groups by a `ShardConfig`, and
a controller moves shards between groups when groups join or leave.

## Modules

- `shardkv.shardcfg` – `ShardConfig` holds the configuration number
  (`num`), the shard-to-group list (`shards`) and the group-to-servers map
  (`groups`). `join_balance` and `leave_balance` add or remove groups and then
  `rebalance`, so no group holds more than one shard more than any other.
  `join`/`leave` return `False` when a group is already present or absent, and
  raise `ConfigError` when a server would sit in two groups. `check_config`
  raises `ConfigError` unless the configuration holds exactly the given groups
  and is balanced. `str(cfg)` gives JSON; `from_string` parses it back.
- `shardkv.rpc` – the `Err` codes and the request/reply dataclasses
  (`GetArgs`, `PutArgs`, `FreezeShardArgs`, `InstallShardArgs`,
  `DeleteShardArgs` and their replies).
- `shardkv.shardgrp_server` – `KVServer`, the state machine of one shard
  group member: versioned `get`/`put`, and `freeze_shard`, `install_shard`,
  `delete_shard` for moving shards, each idempotent per configuration number.
  `snapshot`/`restore` save and load its state; `encode_shard`/`decode_shard`
  serialise one shard. `start_server_shard_grp(gid, me, persister)` makes a
  server, giving group `GID1` every shard when the persister is empty, or
  restoring from the persister's snapshot.
- `shardkv.shardgrp_client` – `Clerk` for one group. It needs an object with
  `call(server, method, args)` that returns the reply, or `None` if the call
  was lost; it rotates through the servers until one answers as leader. `get`
  and `put` give up with `ERR_WRONG_GROUP` after a timeout (10 s by default);
  `put` reports `ERR_MAYBE` when an earlier, lost attempt may have applied.
- `shardkv.shardctrler` – `ShardCtrler(kv, clnt)` keeps the current and
  next configuration in a key/value store `kv` (any object with
  `get(key) -> (value, version, err)` and `put(key, value, version) -> err`),
  and uses `clnt` to reach shard groups. `init_config` stores the first
  configuration, `query` returns the committed one, `change_config_to` moves
  shards and commits a new one, and `init_controller` finishes a change an
  earlier controller left behind. Every change runs under a lease
  (`LeaseState`, renewed in the background and fenced by an epoch).
- `shardkv.client` – `Clerk(clnt, sck)` for applications: it routes each key
  to the group that owns its shard, and asks the controller for a fresh
  configuration whenever that group cannot serve the request.
- `shardkv.persister` – `Persister` keeps Raft state and a snapshot,
  saved together.
- `shardkv.demux` – `Transport`, `DemuxClient` and `DemuxServer` carry
  length-prefixed, tagged frames over a socket and match replies to requests.
- `shardkv.sockrpc` – `RPCServer` listens on a UNIX socket
  (`sock_name(end)` in the temporary directory) and dispatches
  `"Service.Method"` calls to objects added with `add_service`, by method
  name or its snake_case form; `RPCClient.call` sends a request and returns
  the reply, or `None` on failure. Payloads are pickled, so connect only
  trusted peers.
- `shardkv.annotation` – `Annotator` records point, interval and
  continuous annotations of a run; `FailureTracker` turns server shutdowns,
  restarts and partitions into continuous annotations, and checker results
  into points or intervals.

## Example

```python
from shardkv.shardcfg import ShardConfig, key_to_shard

cfg = ShardConfig()
cfg.join_balance({1: ["s1-0", "s1-1", "s1-2"]})
cfg.join_balance({2: ["s2-0", "s2-1", "s2-2"]})
cfg.check_config([1, 2])

shard = key_to_shard("hello")
gid, servers, ok = cfg.gid_servers(shard)
```

## What it does not do

- There is no Raft replication: `KVServer` is a single state machine, and
  nothing here agrees on an order of operations between group members.
- There is no key/value server for the controller's own storage; you pass
  `ShardCtrler` an object providing `get` and `put`.
- There is no simulated network and no process launcher; the clerks take any
  object with a `call` method.
- There is no command-line program, and `shardkv.annotation` does not write
  visualisation files; it only returns the collected `Annotation` records.

## Tests

```
pip install -e ".[test]"
pytest
```