import pytest

from raftshard.shardctrler.common import (
    NSHARDS,
    Config,
    JoinArgs,
    JoinReply,
    LeaveReply,
    MoveReply,
    QueryReply,
)


def test_default_config_is_initial_configuration():
    config = Config()
    assert config.num == 0
    assert config.shards == (0,) * NSHARDS
    assert config.groups == {}


def test_shards_list_becomes_tuple():
    config = Config(num=3, shards=[7] * NSHARDS)
    assert config.shards == (7,) * NSHARDS


@pytest.mark.parametrize("length", [0, NSHARDS - 1, NSHARDS + 1])
def test_wrong_shard_count_rejected(length):
    with pytest.raises(ValueError):
        Config(shards=[1] * length)


def test_default_groups_not_shared():
    first = Config()
    first.groups[1] = ["x"]
    assert Config().groups == {}


def test_configs_compare_by_value():
    a = Config(num=2, shards=[1] * NSHARDS, groups={1: ["x", "y"]})
    b = Config(num=2, shards=tuple([1] * NSHARDS), groups={1: ["x", "y"]})
    assert a == b
    assert a != Config(num=2, shards=[1] * NSHARDS, groups={1: ["x"]})


def test_replies_start_not_done():
    assert JoinReply().done is False
    assert LeaveReply().done is False
    assert MoveReply().done is False
    reply = QueryReply()
    assert reply.done is False
    assert reply.config == Config()


def test_join_args_hold_values():
    args = JoinArgs(servers={1: ["a"]}, client_id=5, sequence_num=2)
    assert args.servers == {1: ["a"]}
    assert (args.client_id, args.sequence_num) == (5, 2)