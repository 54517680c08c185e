"""Client of the shard controller service."""

from __future__ import annotations

import secrets
import threading
import time
from typing import Any

from raftshard.raft.node import Peer
from raftshard.shardctrler.common import Config, JoinArgs, LeaveArgs, MoveArgs, QueryArgs

RETRY_INTERVAL = 0.1  # seconds between rounds over all servers


class Clerk:
    """Sends controller requests, retrying every server until one succeeds."""

    def __init__(self, servers: list[Peer]) -> None:
        self._servers = list(servers)
        self._client_id = secrets.randbelow(1 << 62)
        self._lock = threading.Lock()
        self._sequence_num = 1

    def _next_sequence(self) -> int:
        with self._lock:
            self._sequence_num += 1
            return self._sequence_num

    def _call(self, method: str, args: Any) -> Any:
        while True:
            for server in self._servers:
                reply = server.call(method, args)
                if reply is not None and reply.done:
                    return reply
            time.sleep(RETRY_INTERVAL)

    def query(self, num: int) -> Config:
        """Fetch configuration ``num``, or the latest one if ``num`` is -1."""
        args = QueryArgs(num=num, client_id=self._client_id, sequence_num=self._next_sequence())
        return self._call("query", args).config

    def join(self, servers: dict[int, list[str]]) -> None:
        """Add replica groups, given as gid -> server names."""
        args = JoinArgs(
            servers={gid: list(names) for gid, names in servers.items()},
            client_id=self._client_id,
            sequence_num=self._next_sequence(),
        )
        self._call("join", args)

    def leave(self, gids: list[int]) -> None:
        """Remove the given replica groups."""
        args = LeaveArgs(gids=list(gids), client_id=self._client_id, sequence_num=self._next_sequence())
        self._call("leave", args)

    def move(self, shard: int, gid: int) -> None:
        """Assign ``shard`` to group ``gid``."""
        args = MoveArgs(shard=shard, gid=gid, client_id=self._client_id, sequence_num=self._next_sequence())
        self._call("move", args)