"""Configuration and RPC message types of the shard controller.

A configuration assigns each of the ``NSHARDS`` shards to a replica group
and lists the servers of every group. Configuration 0 has no groups and
assigns every shard to the invalid group 0.
"""

from __future__ import annotations

from dataclasses import dataclass, field

NSHARDS = 10
OK = "OK"


@dataclass
class Config:
    """One numbered configuration: shard -> gid, and gid -> servers."""

    num: int = 0
    shards: tuple[int, ...] = (0,) * NSHARDS
    groups: dict[int, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        shards = tuple(self.shards)
        if len(shards) != NSHARDS:
            raise ValueError(f"a config holds exactly {NSHARDS} shards, got {len(shards)}")
        self.shards = shards


@dataclass
class JoinArgs:
    servers: dict[int, list[str]] = field(default_factory=dict)
    client_id: int = 0
    sequence_num: int = 0


@dataclass
class JoinReply:
    done: bool = False
    err: str = ""


@dataclass
class LeaveArgs:
    gids: list[int] = field(default_factory=list)
    client_id: int = 0
    sequence_num: int = 0


@dataclass
class LeaveReply:
    done: bool = False
    err: str = ""


@dataclass
class MoveArgs:
    shard: int = 0
    gid: int = 0
    client_id: int = 0
    sequence_num: int = 0


@dataclass
class MoveReply:
    done: bool = False
    err: str = ""


@dataclass
class QueryArgs:
    num: int = 0
    client_id: int = 0
    sequence_num: int = 0


@dataclass
class QueryReply:
    done: bool = False
    err: str = ""
    config: Config = field(default_factory=Config)