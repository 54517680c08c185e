import threading

import pytest

from raftshard.raft.node import Peer
from raftshard.raft.persister import Persister
from raftshard.shardkv.common import Err, GetArgs, PutAppendArgs, PutShardReply
from raftshard.shardkv.server import Op, OpType, ShardKV

GID = 100


class _Receiver:
    def __init__(self):
        self.received = []
        self.event = threading.Event()

    def put_shard(self, args):
        self.received.append(args)
        self.event.set()
        return PutShardReply(done=True)


@pytest.fixture
def receiver():
    return _Receiver()


@pytest.fixture
def make_server(receiver):
    made = []

    def build():
        kv = ShardKV([Peer()], 0, Persister(), -1, GID, [], lambda name: Peer(receiver))
        made.append(kv)
        return kv

    yield build
    for kv in made:
        kv.kill()


def grant(kv, shard, data=None, seqs=None):
    kv.apply(
        Op(
            kind=OpType.PUTSHARD,
            shard=shard,
            shard_data=data or {},
            shard_sequence=seqs or {},
            client_id=1,
            sequence_num=1,
        )
    )


def test_put_append_get(make_server):
    kv = make_server()
    grant(kv, 2)
    kv.apply(Op(kind=OpType.PUT, shard=2, key="k", value="a", client_id=5, sequence_num=1))
    kv.apply(Op(kind=OpType.APPEND, shard=2, key="k", value="b", client_id=5, sequence_num=2))
    assert kv.apply(Op(kind=OpType.GET, shard=2, key="k", client_id=5, sequence_num=3)) == "ab"


def test_duplicate_is_ignored(make_server):
    kv = make_server()
    grant(kv, 2)
    kv.apply(Op(kind=OpType.APPEND, shard=2, key="k", value="x", client_id=5, sequence_num=1))
    kv.apply(Op(kind=OpType.APPEND, shard=2, key="k", value="x", client_id=5, sequence_num=1))
    assert kv.apply(Op(kind=OpType.GET, shard=2, key="k", client_id=6, sequence_num=1)) == "x"


def test_ops_on_unheld_shard_do_nothing(make_server):
    kv = make_server()
    kv.apply(Op(kind=OpType.PUT, shard=4, key="k", value="v", client_id=5, sequence_num=1))
    assert kv.apply(Op(kind=OpType.GET, shard=4, key="k", client_id=5, sequence_num=2)) is None


def test_put_shard_installs_data_and_dup_table(make_server):
    kv = make_server()
    grant(kv, 3, data={"a": "1"}, seqs={9: 4})
    kv.apply(Op(kind=OpType.PUT, shard=3, key="a", value="old", client_id=9, sequence_num=4))
    assert kv.apply(Op(kind=OpType.GET, shard=3, key="a", client_id=9, sequence_num=5)) == "1"


def test_handlers_reject_unowned_shard(make_server):
    kv = make_server()
    assert kv.get(GetArgs(key="k", shard=1)).err == Err.WRONG_GROUP
    assert kv.put_append(PutAppendArgs(key="k", value="v", op="Put", shard=1)).err == Err.WRONG_GROUP


def test_move_shard_hands_data_over(make_server, receiver):
    kv = make_server()
    grant(kv, 3, data={"a": "1"}, seqs={9: 4})
    kv.apply(
        Op(kind=OpType.MOVESHARD, config=2, servers=["other"], shard=3,
           client_id=GID, sequence_num=2)
    )
    assert receiver.event.wait(5)
    sent = receiver.received[0]
    assert sent.data == {"a": "1"}
    assert sent.client_sequence_nums == {9: 4}
    assert (sent.shard, sent.client_id, sent.sequence_num) == (3, GID, 2)
    assert kv.apply(Op(kind=OpType.GET, shard=3, key="a", client_id=9, sequence_num=5)) is None


def test_snapshot_round_trip(make_server):
    first = make_server()
    grant(first, 6)
    first.apply(Op(kind=OpType.PUT, shard=6, key="k", value="v", client_id=5, sequence_num=1))
    second = make_server()
    assert second.restore_snapshot(first.encode_snapshot()) is True
    second.apply(Op(kind=OpType.PUT, shard=6, key="k", value="dup", client_id=5, sequence_num=1))
    assert second.apply(Op(kind=OpType.GET, shard=6, key="k", client_id=7, sequence_num=1)) == "v"


def test_restore_rejects_garbage(make_server):
    kv = make_server()
    assert kv.restore_snapshot(b"not a snapshot") is False
    assert kv.restore_snapshot(b"") is False