import pytest

from shardkv.shardcfg import (
    GID1,
    NSHARDS,
    ConfigError,
    ShardConfig,
    from_string,
    key_to_shard,
)


def check_same_config(c1, c2):
    assert c1.num == c2.num
    assert c1.shards == c2.shards
    assert len(c1.groups) == len(c2.groups)
    for gid, sa in c1.groups.items():
        assert gid in c2.groups
        assert c2.groups[gid] == sa


def test_basic():
    gid1, gid2 = 1, 2
    cfg = ShardConfig()
    cfg.check_config([])

    cfg.join_balance({gid1: ["x", "y", "z"]})
    cfg.check_config([gid1])

    cfg.join_balance({gid2: ["a", "b", "c"]})
    cfg.check_config([gid1, gid2])

    assert cfg.groups[gid1] == ["x", "y", "z"]
    assert cfg.groups[gid2] == ["a", "b", "c"]

    cfg.leave_balance([gid1])
    cfg.check_config([gid2])

    cfg.leave_balance([gid2])
    cfg.check_config([])


def test_initial_join_assigns_everything_to_gid1():
    cfg = ShardConfig()
    assert cfg.join_balance({GID1: ["xxx"]})
    assert cfg.num == 1
    assert cfg.shards == [GID1] * NSHARDS
    cfg.check_config([GID1])


def test_string_round_trip():
    cfg = ShardConfig()
    cfg.join_balance({1: ["x", "y"]})
    cfg.join_balance({2: ["a"]})
    check_same_config(cfg, from_string(str(cfg)))


def test_copy_is_independent():
    cfg = ShardConfig()
    cfg.join_balance({1: ["x"]})
    c = cfg.copy()
    check_same_config(cfg, c)
    c.groups[1].append("w")
    c.shards[0] = 7
    assert cfg.groups[1] == ["x"]
    assert cfg.shards[0] == 1


def test_rejoin_returns_false():
    cfg = ShardConfig()
    cfg.join_balance({1: ["x"]})
    assert cfg.join_balance({1: ["q"]}) is False
    assert cfg.num == 1


def test_leave_missing_returns_false():
    cfg = ShardConfig()
    cfg.join_balance({1: ["x"]})
    assert cfg.leave_balance([5]) is False
    assert cfg.num == 1


def test_duplicate_server_raises():
    cfg = ShardConfig()
    cfg.join_balance({1: ["x"]})
    with pytest.raises(ConfigError):
        cfg.join({2: ["x"]})


def test_empty_join_and_leave_raise():
    cfg = ShardConfig()
    with pytest.raises(ConfigError):
        cfg.join({})
    with pytest.raises(ConfigError):
        cfg.leave([])


def test_many_groups_balanced_and_membership():
    cfg = ShardConfig()
    for gid in range(1, 9):
        assert cfg.join_balance({gid: [f"s{gid}"]})
    cfg.check_config(list(range(1, 9)))
    for gid in range(1, 9):
        assert cfg.is_member(gid)
    assert not cfg.is_member(42)
    for gid in range(1, 9):
        assert cfg.leave_balance([gid])
    assert cfg.shards == [0] * NSHARDS


def test_gid_servers():
    cfg = ShardConfig()
    cfg.join_balance({1: ["x", "y"]})
    assert cfg.gid_servers(3) == (1, ["x", "y"], True)
    empty = ShardConfig()
    gid, srvs, ok = empty.gid_servers(0)
    assert (gid, ok) == (0, False)
    assert srvs is None


def test_check_config_detects_problems():
    cfg = ShardConfig()
    cfg.join_balance({1: ["x"]})
    with pytest.raises(ConfigError):
        cfg.check_config([1, 2])
    cfg.groups[2] = ["a"]
    with pytest.raises(ConfigError):
        cfg.check_config([1, 2])


def test_key_to_shard():
    assert key_to_shard("") == 1
    for i in range(100):
        k = f"key{i}"
        assert 0 <= key_to_shard(k) < NSHARDS
        assert key_to_shard(k) == key_to_shard(k)


def test_from_string_rejects_garbage():
    with pytest.raises(ConfigError):
        from_string("not json")