from raftshard.shardkv.common import (
    Err,
    GetReply,
    PutAppendArgs,
    PutShardArgs,
    PutShardReply,
)


def test_err_wire_values():
    wire = ["OK", "ErrNoKey", "ErrWrongGroup", "ErrWrongLeader", "ErrTimeout"]
    assert [Err(value) for value in wire] == [
        Err.OK,
        Err.NO_KEY,
        Err.WRONG_GROUP,
        Err.WRONG_LEADER,
        Err.TIMEOUT,
    ]
    assert Err.OK == "OK"
    assert Err.TIMEOUT == "ErrTimeout"


def test_err_lookup_by_value():
    assert Err("ErrWrongGroup") is Err.WRONG_GROUP


def test_put_shard_args_have_independent_maps():
    first = PutShardArgs()
    second = PutShardArgs()
    first.data["k"] = "v"
    first.client_sequence_nums[1] = 2
    assert second.data == {}
    assert second.client_sequence_nums == {}


def test_defaults():
    assert PutShardReply().done is False
    assert GetReply().value == ""
    args = PutAppendArgs(key="k", value="v", op="Append")
    assert (args.key, args.value, args.op) == ("k", "v", "Append")