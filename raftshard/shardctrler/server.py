"""Shard controller server: a Raft-replicated history of configurations."""

from __future__ import annotations

import enum
import logging
import queue
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from raftshard.raft.log import ApplyMsg
from raftshard.raft.node import Peer, Raft
from raftshard.raft.persister import Persister
from raftshard.shardctrler.common import (
    NSHARDS,
    Config,
    JoinArgs,
    JoinReply,
    LeaveArgs,
    LeaveReply,
    MoveArgs,
    MoveReply,
    QueryArgs,
    QueryReply,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 1.0  # seconds a handler waits for its op to be applied


class OpType(enum.IntEnum):
    JOIN = 0
    LEAVE = 1
    MOVE = 2
    QUERY = 3


@dataclass
class Op:
    """A controller operation as it travels through the Raft log."""

    kind: OpType
    servers: dict[int, list[str]] = field(default_factory=dict)
    gids: list[int] = field(default_factory=list)
    shard: int = 0
    gid: int = 0
    num: int = 0
    client_id: int = 0
    sequence_num: int = 0


def balance(shards: int, gids: Iterable[int]) -> list[int]:
    """Spread ``shards`` over the sorted ``gids`` as evenly as possible.

    Lower gids receive the extra shards; with no gids every shard goes
    to the invalid group 0.
    """
    ordered = sorted(gids)
    if not ordered:
        return [0] * shards
    base, extra = divmod(shards, len(ordered))
    result: list[int] = []
    for position, gid in enumerate(ordered):
        result.extend([gid] * (base + (1 if position < extra else 0)))
    return result


class ShardCtrler:
    """One replica of the fault-tolerant shard controller."""

    def __init__(self, servers: list[Peer], me: int, persister: Persister) -> None:
        self._me = me
        self._lock = threading.Lock()
        self._applied = threading.Condition(self._lock)
        self._configs: list[Config] = [Config()]
        self._client_seq: dict[int, int] = {}
        self._query_buffer: dict[int, Config] = {}
        self._stopped = threading.Event()
        self._apply_queue: "queue.Queue[ApplyMsg]" = queue.Queue()
        self._rf = Raft(servers, me, persister, self._apply_queue)
        threading.Thread(target=self._receive, daemon=True).start()

    # ----- RPC handlers -----------------------------------------------

    def join(self, args: JoinArgs) -> JoinReply:
        op = Op(
            kind=OpType.JOIN,
            servers={gid: list(names) for gid, names in args.servers.items()},
            client_id=args.client_id,
            sequence_num=args.sequence_num,
        )
        return JoinReply(done=self._replicate(op))

    def leave(self, args: LeaveArgs) -> LeaveReply:
        op = Op(
            kind=OpType.LEAVE,
            gids=list(args.gids),
            client_id=args.client_id,
            sequence_num=args.sequence_num,
        )
        return LeaveReply(done=self._replicate(op))

    def move(self, args: MoveArgs) -> MoveReply:
        op = Op(
            kind=OpType.MOVE,
            shard=args.shard,
            gid=args.gid,
            client_id=args.client_id,
            sequence_num=args.sequence_num,
        )
        return MoveReply(done=self._replicate(op))

    def query(self, args: QueryArgs) -> QueryReply:
        op = Op(
            kind=OpType.QUERY,
            num=args.num,
            client_id=args.client_id,
            sequence_num=args.sequence_num,
        )
        if not self._replicate(op):
            return QueryReply()
        with self._lock:
            config = self._query_buffer.get(args.client_id, Config())
        return QueryReply(done=True, config=config)

    # ----- state machine ----------------------------------------------

    def apply(self, op: Op) -> Config | None:
        """Apply a committed op.

        Returns the configuration the op created or looked up, or ``None``
        if the op was already applied for its client.
        """
        with self._applied:
            if self._client_seq.get(op.client_id, 0) >= op.sequence_num:
                return None
            self._client_seq[op.client_id] = op.sequence_num
            try:
                if op.kind == OpType.JOIN:
                    return self._join(op)
                if op.kind == OpType.LEAVE:
                    return self._leave(op)
                if op.kind == OpType.MOVE:
                    return self._move(op)
                return self._query(op)
            finally:
                self._applied.notify_all()

    def _append(self, shards: Iterable[int], groups: dict[int, list[str]]) -> Config:
        config = Config(num=len(self._configs), shards=tuple(shards), groups=groups)
        self._configs.append(config)
        return config

    def _join(self, op: Op) -> Config:
        groups = dict(self._configs[-1].groups)
        groups.update(op.servers)
        return self._append(balance(NSHARDS, groups), groups)

    def _leave(self, op: Op) -> Config:
        groups = dict(self._configs[-1].groups)
        for gid in op.gids:
            groups.pop(gid, None)
        return self._append(balance(NSHARDS, groups), groups)

    def _move(self, op: Op) -> Config:
        if not 0 <= op.shard < NSHARDS:
            raise ValueError(f"shard {op.shard} out of range")
        latest = self._configs[-1]
        shards = list(latest.shards)
        shards[op.shard] = op.gid
        return self._append(shards, dict(latest.groups))

    def _query(self, op: Op) -> Config:
        if op.num < -1:
            raise ValueError(f"invalid config number {op.num}")
        if op.num == -1 or op.num >= len(self._configs):
            config = self._configs[-1]
        else:
            config = self._configs[op.num]
        self._query_buffer[op.client_id] = config
        return config

    # ----- plumbing ---------------------------------------------------

    def _replicate(self, op: Op) -> bool:
        _, _, is_leader = self._rf.start(op)
        if not is_leader:
            return False
        with self._applied:
            return self._applied.wait_for(
                lambda: self._client_seq.get(op.client_id, 0) >= op.sequence_num,
                timeout=REQUEST_TIMEOUT,
            )

    def _receive(self) -> None:
        while not self._stopped.is_set():
            try:
                msg = self._apply_queue.get(timeout=0.05)
            except queue.Empty:
                continue
            command: Any = msg.command
            if msg.command_valid and isinstance(command, Op):
                try:
                    self.apply(command)
                except ValueError as exc:
                    logger.error("controller %d rejected op: %s", self._me, exc)

    def kill(self) -> None:
        """Stop this replica and its Raft peer."""
        self._stopped.set()
        self._rf.kill()

    def raft(self) -> Raft:
        """Return the Raft peer backing this replica."""
        return self._rf