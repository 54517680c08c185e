"""A replica of one key/value group, serving the shards its group owns."""

from __future__ import annotations

import enum
import pickle
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from raftshard.raft.log import ApplyMsg
from raftshard.raft.node import Peer, Raft
from raftshard.raft.persister import Persister
from raftshard.shardctrler.client import Clerk as CtrlerClerk
from raftshard.shardctrler.common import NSHARDS, Config
from raftshard.shardkv.common import (
    Err,
    GetArgs,
    GetReply,
    PutAppendArgs,
    PutAppendReply,
    PutShardArgs,
    PutShardReply,
)

REQUEST_TIMEOUT = 1.0
CONFIG_POLL = 0.05
TASK_POLL = 0.005


class OpType(enum.IntEnum):
    GET = 0
    PUT = 1
    APPEND = 2
    PUTSHARD = 3
    MOVESHARD = 4
    NOOP = 5


@dataclass
class Op:
    """A key/value or shard-migration operation in the Raft log."""

    kind: OpType = OpType.NOOP
    key: str = ""
    value: str = ""
    config: int = 0
    shard: int = 0
    shard_data: dict[str, str] = field(default_factory=dict)
    shard_sequence: dict[int, int] = field(default_factory=dict)
    shard_buffer: dict[int, str] = field(default_factory=dict)
    servers: list[str] = field(default_factory=list)
    client_id: int = 0
    sequence_num: int = 0


@dataclass
class MoveTask:
    """A shard waiting to be handed to the group that now owns it."""

    config: int = 0
    servers: list[str] = field(default_factory=list)
    shard: int = 0
    shard_data: dict[str, str] = field(default_factory=dict)
    shard_sequence: dict[int, int] = field(default_factory=dict)
    shard_buffer: dict[int, str] = field(default_factory=dict)


@dataclass
class SnapshotData:
    data: list[dict[str, str]]
    client_sequence_nums: list[dict[int, int]]
    server_sequence_nums: list[dict[int, int]]
    cur_shards: list[bool]
    tasks: list[MoveTask]
    check_config: bool


def _spawn(target: Callable[[], Any]) -> None:
    threading.Thread(target=target, daemon=True).start()


class ShardKV:
    """One server of a replica group."""

    def __init__(
        self,
        servers: list[Peer],
        me: int,
        persister: Persister,
        maxraftstate: int,
        gid: int,
        ctrlers: list[Peer],
        make_end: Callable[[str], Peer],
    ) -> None:
        self._me = me
        self._maxraftstate = maxraftstate
        self._make_end = make_end
        self._gid = gid
        self._lock = threading.Lock()
        self._applied = threading.Condition(self._lock)
        self._stopped = threading.Event()

        self._sm = CtrlerClerk(ctrlers)
        self._config = Config()
        self._data: list[dict[str, str]] = [{} for _ in range(NSHARDS)]
        self._client_seq: list[dict[int, int]] = [{} for _ in range(NSHARDS)]
        self._server_seq: list[dict[int, int]] = [{} for _ in range(NSHARDS)]
        self._cur_shards = [False] * NSHARDS
        self._required_shards = [False] * NSHARDS
        self._tasks: list[MoveTask] = []
        self._check_config = False
        self._apply_index = 0

        self._apply_queue: "queue.Queue[ApplyMsg]" = queue.Queue()
        self._rf = Raft(servers, me, persister, self._apply_queue)
        self.restore_snapshot(persister.read_snapshot())

        _spawn(self._update_config)
        _spawn(self._receive)
        _spawn(self._try_snapshot)
        _spawn(self._try_move_shard)

    # ----- RPC handlers -----------------------------------------------

    def _serves(self, shard: int) -> bool:
        return self._config.shards[shard] == self._gid and self._cur_shards[shard]

    def _wait(self, done: Callable[[], bool]) -> bool:
        with self._applied:
            return self._applied.wait_for(done, timeout=REQUEST_TIMEOUT)

    def get(self, args: GetArgs) -> GetReply:
        with self._lock:
            if not self._serves(args.shard):
                return GetReply(err=Err.WRONG_GROUP)
        op = Op(
            kind=OpType.GET,
            key=args.key,
            shard=args.shard,
            client_id=args.client_id,
            sequence_num=args.sequence_num,
        )
        if not self._rf.start(op)[2]:
            return GetReply(err=Err.WRONG_LEADER)
        if not self._wait(
            lambda: self._client_seq[args.shard].get(args.client_id, 0) >= args.sequence_num
        ):
            return GetReply(err=Err.TIMEOUT)
        with self._lock:
            return GetReply(err=Err.OK, value=self._data[args.shard].get(args.key, ""))

    def put_append(self, args: PutAppendArgs) -> PutAppendReply:
        with self._lock:
            if not self._serves(args.shard):
                return PutAppendReply(err=Err.WRONG_GROUP)
        kind = OpType.PUT if args.op == "Put" else OpType.APPEND
        op = Op(
            kind=kind,
            key=args.key,
            value=args.value,
            shard=args.shard,
            client_id=args.client_id,
            sequence_num=args.sequence_num,
        )
        if not self._rf.start(op)[2]:
            return PutAppendReply(err=Err.WRONG_LEADER)
        if not self._wait(
            lambda: self._client_seq[args.shard].get(args.client_id, 0) >= args.sequence_num
        ):
            return PutAppendReply(err=Err.TIMEOUT)
        return PutAppendReply(err=Err.OK)

    def put_shard(self, args: PutShardArgs) -> PutShardReply:
        op = Op(
            kind=OpType.PUTSHARD,
            shard=args.shard,
            shard_data=dict(args.data),
            shard_sequence=dict(args.client_sequence_nums),
            client_id=args.client_id,
            sequence_num=args.sequence_num,
        )
        if not self._rf.start(op)[2]:
            return PutShardReply()
        done = self._wait(
            lambda: self._server_seq[args.shard].get(args.client_id, 0) >= args.sequence_num
        )
        return PutShardReply(done=done)

    # ----- state machine ----------------------------------------------

    def apply(self, op: Op) -> str | None:
        """Apply a committed op; a get returns the key's value if the shard is held."""
        with self._applied:
            try:
                if op.kind == OpType.GET:
                    return self._do_get(op)
                if op.kind in (OpType.PUT, OpType.APPEND):
                    self._do_put_append(op)
                elif op.kind == OpType.PUTSHARD:
                    self._do_put_shard(op)
                elif op.kind == OpType.MOVESHARD:
                    self._do_move_shard(op)
                return None
            finally:
                self._applied.notify_all()

    def _do_get(self, op: Op) -> str | None:
        if not self._cur_shards[op.shard]:
            return None
        seqs = self._client_seq[op.shard]
        if seqs.get(op.client_id, 0) < op.sequence_num:
            seqs[op.client_id] = op.sequence_num
        return self._data[op.shard].get(op.key, "")

    def _do_put_append(self, op: Op) -> None:
        seqs = self._client_seq[op.shard]
        if seqs.get(op.client_id, 0) >= op.sequence_num or not self._cur_shards[op.shard]:
            return
        seqs[op.client_id] = op.sequence_num
        store = self._data[op.shard]
        if op.kind == OpType.PUT:
            store[op.key] = op.value
        else:
            store[op.key] = store.get(op.key, "") + op.value

    def _do_put_shard(self, op: Op) -> None:
        seqs = self._server_seq[op.shard]
        if seqs.get(op.client_id, 0) >= op.sequence_num:
            return
        seqs[op.client_id] = op.sequence_num
        self._cur_shards[op.shard] = True
        self._data[op.shard] = dict(op.shard_data)
        self._client_seq[op.shard] = dict(op.shard_sequence)

    def _do_move_shard(self, op: Op) -> None:
        seqs = self._server_seq[op.shard]
        if seqs.get(op.client_id, 0) >= op.sequence_num or not self._cur_shards[op.shard]:
            return
        seqs[op.client_id] = op.sequence_num
        self._cur_shards[op.shard] = False
        self._tasks.append(
            MoveTask(
                config=op.config,
                servers=list(op.servers),
                shard=op.shard,
                shard_data=dict(self._data[op.shard]),
                shard_sequence=dict(self._client_seq[op.shard]),
            )
        )
        self._data[op.shard] = {}
        self._client_seq[op.shard] = {}

    # ----- snapshots --------------------------------------------------

    def _encode(self) -> bytes:
        return pickle.dumps(
            SnapshotData(
                data=self._data,
                client_sequence_nums=self._client_seq,
                server_sequence_nums=self._server_seq,
                cur_shards=self._cur_shards,
                tasks=self._tasks,
                check_config=self._check_config,
            )
        )

    def encode_snapshot(self) -> bytes:
        """Serialise everything the server needs to resume after a restart."""
        with self._lock:
            return self._encode()

    def restore_snapshot(self, snapshot: bytes) -> bool:
        """Load a snapshot; return False and keep state if it cannot be decoded."""
        if not snapshot:
            return False
        try:
            state = pickle.loads(snapshot)
        except Exception:
            return False
        if not isinstance(state, SnapshotData):
            return False
        with self._applied:
            self._data = state.data
            self._client_seq = state.client_sequence_nums
            self._server_seq = state.server_sequence_nums
            self._cur_shards = state.cur_shards
            self._tasks = state.tasks
            self._check_config = state.check_config
            self._applied.notify_all()
        return True

    def kill(self) -> None:
        """Stop this server and its Raft peer."""
        self._stopped.set()
        self._rf.kill()

    # ----- background work --------------------------------------------

    def _update_config(self) -> None:
        while not self._stopped.is_set():
            config = self._sm.query(-1)
            self._rf.start(Op(kind=OpType.NOOP))
            with self._lock:
                changed = config.num != self._config.num and config.num != 0
                need_first = changed and not self._check_config
            first = self._sm.query(1) if need_first else None
            moves: list[Op] = []
            with self._lock:
                if config.num != self._config.num and config.num != 0:
                    if not self._check_config and first is not None:
                        for i, gid in enumerate(first.shards):
                            if gid == self._gid:
                                self._cur_shards[i] = True
                        self._check_config = True
                    self._required_shards = [gid == self._gid for gid in config.shards]
                    self._config = config
                for i, (held, needed) in enumerate(zip(self._cur_shards, self._required_shards)):
                    if held and not needed:
                        target = self._config.shards[i]
                        moves.append(
                            Op(
                                kind=OpType.MOVESHARD,
                                config=self._config.num,
                                servers=list(self._config.groups.get(target, [])),
                                shard=i,
                                client_id=self._gid,
                                sequence_num=self._config.num,
                            )
                        )
            for op in moves:
                self._rf.start(op)
            time.sleep(CONFIG_POLL)

    def _receive(self) -> None:
        while not self._stopped.is_set():
            try:
                msg = self._apply_queue.get(timeout=0.05)
            except queue.Empty:
                continue
            if msg.command_valid and isinstance(msg.command, Op):
                self.apply(msg.command)
                with self._lock:
                    self._apply_index = msg.command_index
            elif msg.snapshot_valid:
                self.restore_snapshot(msg.snapshot)

    def _try_snapshot(self) -> None:
        while not self._stopped.is_set():
            if (
                self._maxraftstate > 0
                and self._rf.raft_state_size() >= self._maxraftstate * 8 // 10
            ):
                with self._lock:
                    data = self._encode()
                    index = self._apply_index
                self._rf.snapshot(index, data)
            time.sleep(TASK_POLL)

    def _try_move_shard(self) -> None:
        while not self._stopped.is_set():
            with self._lock:
                task = self._tasks.pop(0) if self._tasks else None
            if task is not None:
                self._move_shard(task)
            time.sleep(TASK_POLL)

    def _move_shard(self, task: MoveTask) -> None:
        args = PutShardArgs(
            shard=task.shard,
            data=task.shard_data,
            client_id=self._gid,
            sequence_num=task.config,
            client_sequence_nums=task.shard_sequence,
            buffer=task.shard_buffer,
        )
        while not self._stopped.is_set():
            for name in task.servers:
                reply = self._make_end(name).call("put_shard", args)
                if reply is not None and reply.done:
                    return
            time.sleep(TASK_POLL)