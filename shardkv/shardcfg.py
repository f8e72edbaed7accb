"""Shard configurations: which group serves which shard."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

log = logging.getLogger(__name__)

NSHARDS = 12
NUM_FIRST = 1
GID1 = 1

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


class ConfigError(Exception):
    """Raised when a configuration is malformed or an operation is invalid."""


def key_to_shard(key: str) -> int:
    """Return the shard a key belongs to (FNV-1a 32-bit hash modulo NSHARDS)."""
    h = _FNV_OFFSET
    for byte in key.encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h % NSHARDS


def _empty_shards() -> list[int]:
    return [0] * NSHARDS


@dataclass
class ShardConfig:
    """A numbered assignment of shards to groups, plus each group's servers."""

    num: int = 0
    shards: list[int] = field(default_factory=_empty_shards)
    groups: dict[int, list[str]] = field(default_factory=dict)

    def __str__(self) -> str:
        groups = {str(gid): list(srvs) for gid, srvs in self.groups.items()}
        ordered = dict(sorted(groups.items()))
        return json.dumps(
            {"Num": self.num, "Shards": list(self.shards), "Groups": ordered},
            separators=(",", ":"),
        )

    def copy(self) -> ShardConfig:
        return ShardConfig(
            num=self.num,
            shards=list(self.shards),
            groups={gid: list(srvs) for gid, srvs in self.groups.items()},
        )

    def _analyze(self) -> tuple[int, int, int, int]:
        """Return (most-loaded gid, its count, least-loaded gid, its count)."""
        counts: dict[int, int] = {}
        for g in self.shards:
            counts[g] = counts.get(g, 0) + 1
        mn, mg = -1, -1
        ln, lg = 257, -1
        for g in sorted(self.groups):
            n = counts.get(g, 0)
            if n < ln:
                ln, lg = n, g
            if n > mn:
                mn, mg = n, g
        return mg, mn, lg, ln

    def _least(self) -> int:
        return self._analyze()[2]

    def rebalance(self) -> None:
        """Spread shards evenly over the current groups, in place."""
        if not self.groups:
            self.shards = _empty_shards()
            return
        for s, g in enumerate(list(self.shards)):
            if g not in self.groups:
                self.shards[s] = self._least()
        while True:
            mg, mn, lg, ln = self._analyze()
            if mn < ln + 2:
                break
            self.shards[self.shards.index(mg)] = lg

    def join(self, servers: Mapping[int, Iterable[str]]) -> bool:
        """Add new groups; return False if one of them is already present."""
        changed = False
        for gid, srvs in servers.items():
            srvs = list(srvs)
            if gid in self.groups:
                log.info("re-Join %s", gid)
                return False
            for xgid, xservers in self.groups.items():
                for s in xservers:
                    if s in srvs:
                        raise ConfigError(
                            f"Join({gid}) puts server {s} in groups {xgid} and {gid}"
                        )
            self.groups[gid] = srvs
            changed = True
        if not changed:
            raise ConfigError("Join but no change")
        self.num += 1
        return True

    def leave(self, gids: Iterable[int]) -> bool:
        """Remove groups; return False if one of them is not present."""
        changed = False
        for gid in gids:
            if gid not in self.groups:
                log.info("Leave(%s) but not in config", gid)
                return False
            del self.groups[gid]
            changed = True
        if not changed:
            raise ConfigError("Leave but no change")
        self.num += 1
        return True

    def join_balance(self, servers: Mapping[int, Iterable[str]]) -> bool:
        if not self.join(servers):
            return False
        self.rebalance()
        return True

    def leave_balance(self, gids: Iterable[int]) -> bool:
        if not self.leave(gids):
            return False
        self.rebalance()
        return True

    def gid_servers(self, shard: int) -> tuple[int, list[str] | None, bool]:
        """Return the shard's gid, that group's servers, and whether it exists."""
        gid = self.shards[shard]
        srvs = self.groups.get(gid)
        return gid, srvs, srvs is not None

    def is_member(self, gid: int) -> bool:
        return gid in self.shards

    def check_config(self, groups: Iterable[int]) -> None:
        """Raise ConfigError unless the config holds exactly `groups`, balanced."""
        groups = list(groups)
        if len(self.groups) != len(groups):
            raise ConfigError(f"wanted {len(groups)} groups, got {len(self.groups)}")
        for g in groups:
            if g not in self.groups:
                raise ConfigError(f"missing group {g}")
        if groups:
            for s, g in enumerate(self.shards):
                if g not in self.groups:
                    raise ConfigError(f"shard {s} -> invalid group {g}")
        counts: dict[int, int] = {}
        for g in self.shards:
            counts[g] = counts.get(g, 0) + 1
        lo, hi = 257, 0
        for g in self.groups:
            n = counts.get(g, 0)
            hi = max(hi, n)
            lo = min(lo, n)
        if hi > lo + 1:
            raise ConfigError(f"max {hi} too much larger than min {lo}")


def from_string(s: str) -> ShardConfig:
    """Parse a configuration produced by ``str(ShardConfig)``."""
    try:
        raw = json.loads(s)
        num = int(raw.get("Num", 0))
        shards = _empty_shards()
        for i, g in enumerate((raw.get("Shards") or [])[:NSHARDS]):
            shards[i] = int(g)
        groups = {
            int(gid): list(srvs or []) for gid, srvs in (raw.get("Groups") or {}).items()
        }
    except (ValueError, TypeError, AttributeError) as exc:
        raise ConfigError(f"Unmarshall err {exc}") from exc
    return ShardConfig(num=num, shards=shards, groups=groups)