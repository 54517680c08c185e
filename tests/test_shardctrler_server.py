from collections import Counter

import pytest

from raftshard.raft.node import Peer
from raftshard.raft.persister import Persister
from raftshard.shardctrler.common import NSHARDS, Config, JoinArgs, QueryArgs
from raftshard.shardctrler.server import Op, OpType, ShardCtrler, balance


@pytest.fixture
def ctrler():
    server = ShardCtrler([Peer()], 0, Persister())
    yield server
    server.kill()


class _Ops:
    def __init__(self, server, client_id=7):
        self.server = server
        self.client_id = client_id
        self.seq = 0

    def __call__(self, kind, **fields):
        self.seq += 1
        return self.server.apply(
            Op(kind=kind, client_id=self.client_id, sequence_num=self.seq, **fields)
        )


def test_balance_without_groups_uses_invalid_group():
    assert balance(NSHARDS, []) == [0] * NSHARDS


@pytest.mark.parametrize("gids", [[1], [2, 1], [3, 1, 2], list(range(100, 111))])
def test_balance_is_even_and_sorted(gids):
    result = balance(NSHARDS, gids)
    assert len(result) == NSHARDS
    assert result == sorted(result)
    assert set(result) <= set(gids)
    counts = Counter(result)
    per_group = [counts[g] for g in gids]
    assert max(per_group) - min(per_group) <= 1


def test_balance_leaves_input_untouched():
    gids = [3, 1, 2]
    balance(NSHARDS, gids)
    assert gids == [3, 1, 2]


def test_join_creates_next_config(ctrler):
    ops = _Ops(ctrler)
    config = ops(OpType.JOIN, servers={1: ["x", "y", "z"]})
    assert config.num == 1
    assert config.groups == {1: ["x", "y", "z"]}
    assert config.shards == (1,) * NSHARDS


def test_duplicate_sequence_is_ignored(ctrler):
    ctrler.apply(Op(kind=OpType.JOIN, servers={1: ["x"]}, client_id=1, sequence_num=2))
    again = ctrler.apply(Op(kind=OpType.JOIN, servers={2: ["y"]}, client_id=1, sequence_num=2))
    assert again is None
    latest = ctrler.apply(Op(kind=OpType.QUERY, num=-1, client_id=2, sequence_num=1))
    assert latest.num == 1
    assert set(latest.groups) == {1}


def test_leave_removes_group_and_rebalances(ctrler):
    ops = _Ops(ctrler)
    ops(OpType.JOIN, servers={1: ["x"], 2: ["a"]})
    config = ops(OpType.LEAVE, gids=[1])
    assert config.groups == {2: ["a"]}
    assert set(config.shards) == {2}


def test_leave_of_all_groups_returns_shards_to_group_zero(ctrler):
    ops = _Ops(ctrler)
    ops(OpType.JOIN, servers={1: ["x"]})
    config = ops(OpType.LEAVE, gids=[1])
    assert config.groups == {}
    assert config.shards == (0,) * NSHARDS


def test_move_reassigns_one_shard(ctrler):
    ops = _Ops(ctrler)
    before = ops(OpType.JOIN, servers={1: ["x"], 2: ["a"]})
    after = ops(OpType.MOVE, shard=0, gid=2)
    assert after.num == before.num + 1
    assert after.shards[0] == 2
    assert after.shards[1:] == before.shards[1:]
    assert after.groups == before.groups


def test_move_rejects_bad_shard(ctrler):
    ops = _Ops(ctrler)
    with pytest.raises(ValueError):
        ops(OpType.MOVE, shard=NSHARDS, gid=1)


def test_query_history_and_latest(ctrler):
    ops = _Ops(ctrler)
    first = ops(OpType.JOIN, servers={1: ["x"]})
    second = ops(OpType.JOIN, servers={2: ["a"]})
    assert ops(OpType.QUERY, num=0) == Config()
    assert ops(OpType.QUERY, num=1) == first
    assert ops(OpType.QUERY, num=-1) == second
    assert ops(OpType.QUERY, num=1000) == second


def test_query_rejects_negative_number(ctrler):
    ops = _Ops(ctrler)
    with pytest.raises(ValueError):
        ops(OpType.QUERY, num=-5)


def test_join_does_not_change_older_configs(ctrler):
    ops = _Ops(ctrler)
    first = ops(OpType.JOIN, servers={1: ["x"]})
    ops(OpType.JOIN, servers={2: ["a"]})
    assert ops(OpType.QUERY, num=1).groups == {1: ["x"]}
    assert first.groups == {1: ["x"]}


def test_killed_replica_does_not_serve(ctrler):
    ctrler.kill()
    assert ctrler.raft().killed() is True
    assert ctrler.join(JoinArgs(servers={1: ["x"]}, client_id=1, sequence_num=2)).done is False
    reply = ctrler.query(QueryArgs(num=-1, client_id=1, sequence_num=3))
    assert reply.done is False
    assert reply.config == Config()