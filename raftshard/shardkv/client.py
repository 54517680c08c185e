"""Client of the sharded key/value service."""

from __future__ import annotations

import secrets
import threading
import time
from typing import Callable

from raftshard.raft.node import Peer
from raftshard.shardctrler.client import Clerk as CtrlerClerk
from raftshard.shardctrler.common import NSHARDS, Config
from raftshard.shardkv.common import Err, GetArgs, PutAppendArgs

RETRY_INTERVAL = 0.1


def key2shard(key: str) -> int:
    """Return the shard holding ``key``: its first byte modulo the shard count."""
    raw = key.encode()
    return (raw[0] if raw else 0) % NSHARDS


class Clerk:
    """Finds the group serving a key's shard and sends it the request."""

    def __init__(self, ctrlers: list[Peer], make_end: Callable[[str], Peer]) -> None:
        self._sm = CtrlerClerk(ctrlers)
        self._make_end = make_end
        self._config = Config()
        self._client_id = secrets.randbelow(1 << 62)
        self._lock = threading.Lock()
        self._sequence_nums = [0] * NSHARDS

    def _next_sequence(self, shard: int) -> int:
        with self._lock:
            self._sequence_nums[shard] += 1
            return self._sequence_nums[shard]

    def _send(self, method: str, args, accepted: tuple[str, ...]):
        shard = args.shard
        while True:
            gid = self._config.shards[shard]
            args.gid = gid
            for name in self._config.groups.get(gid, []):
                reply = self._make_end(name).call(method, args)
                if reply is None:
                    continue
                if reply.err in accepted:
                    return reply
                if reply.err == Err.WRONG_GROUP:
                    break
            time.sleep(RETRY_INTERVAL)
            self._config = self._sm.query(-1)

    def get(self, key: str) -> str:
        """Return the value of ``key``, or "" if it does not exist."""
        shard = key2shard(key)
        args = GetArgs(key=key, shard=shard, client_id=self._client_id,
                       sequence_num=self._next_sequence(shard))
        return self._send("get", args, (Err.OK, Err.NO_KEY)).value

    def put_append(self, key: str, value: str, op: str) -> None:
        """Send a "Put" or "Append" of ``value`` to ``key``."""
        shard = key2shard(key)
        args = PutAppendArgs(key=key, value=value, op=op, shard=shard,
                             client_id=self._client_id, sequence_num=self._next_sequence(shard))
        self._send("put_append", args, (Err.OK,))

    def put(self, key: str, value: str) -> None:
        self.put_append(key, value, "Put")

    def append(self, key: str, value: str) -> None:
        self.put_append(key, value, "Append")