"""RPC message types of the sharded key/value service."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class Err(str, enum.Enum):
    """Outcome of a key/value request."""

    OK = "OK"
    NO_KEY = "ErrNoKey"
    WRONG_GROUP = "ErrWrongGroup"
    WRONG_LEADER = "ErrWrongLeader"
    TIMEOUT = "ErrTimeout"


@dataclass
class PutAppendArgs:
    key: str = ""
    value: str = ""
    op: str = ""  # "Put" or "Append"
    gid: int = 0
    shard: int = 0
    client_id: int = 0
    sequence_num: int = 0


@dataclass
class PutAppendReply:
    err: str = ""


@dataclass
class GetArgs:
    key: str = ""
    gid: int = 0
    shard: int = 0
    client_id: int = 0
    sequence_num: int = 0


@dataclass
class GetReply:
    err: str = ""
    value: str = ""


@dataclass
class PutShardArgs:
    """A shard's data and duplicate table handed from one group to another."""

    shard: int = 0
    data: dict[str, str] = field(default_factory=dict)
    config: int = 0
    client_id: int = 0
    sequence_num: int = 0
    client_sequence_nums: dict[int, int] = field(default_factory=dict)
    buffer: dict[int, str] = field(default_factory=dict)


@dataclass
class PutShardReply:
    config: int = 0
    done: bool = False