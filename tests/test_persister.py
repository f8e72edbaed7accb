from shardkv.persister import Persister


def test_new_persister_is_empty():
    p = Persister()
    assert p.read_raft_state() == b""
    assert p.raft_state_size() == 0
    assert p.snapshot_size() == 0


def test_save_and_read_back():
    p = Persister()
    raft, snap = b"raft-state", b"snap"
    p.save(raft, snap)
    assert p.read_raft_state() == raft
    assert p.read_snapshot() == snap
    assert p.raft_state_size() == len(raft)
    assert p.snapshot_size() == len(snap)


def test_save_copies_mutable_input():
    p = Persister()
    buf = bytearray(b"abc")
    p.save(buf, buf)
    buf[0] = ord("z")
    assert p.read_raft_state() == b"abc"
    assert p.read_snapshot() == b"abc"


def test_save_none_is_empty():
    p = Persister()
    p.save(b"x", b"y")
    p.save(None, None)
    assert p.raft_state_size() == 0
    assert p.snapshot_size() == 0


def test_checkpoint_is_independent():
    p = Persister()
    p.save(b"one", b"two")
    cp = p.checkpoint()
    p.save(b"three", b"four")
    assert cp.read_raft_state() == b"one"
    assert cp.read_snapshot() == b"two"
    assert p.read_raft_state() == b"three"