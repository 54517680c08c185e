"""Raft log, message types and persistent-state encoding."""

from __future__ import annotations

import enum
import pickle
import random
from dataclasses import dataclass, field
from typing import Any

FAILED = -1
BROADCAST_TIME = 100  # heartbeat interval, milliseconds
ELECTION_TIMEOUT_BASE = 200
ELECTION_TIMEOUT_RANGE = 200


class Role(enum.IntEnum):
    """The role a Raft peer currently plays."""

    LEADER = 1
    CANDIDATE = 2
    FOLLOWER = 3


@dataclass
class ApplyMsg:
    """A committed command or an installed snapshot, sent to the service."""

    command_valid: bool = False
    command: Any = None
    command_index: int = 0
    snapshot_valid: bool = False
    snapshot: bytes = b""
    snapshot_term: int = 0
    snapshot_index: int = 0


@dataclass
class LogEntry:
    """One entry of the replicated log."""

    command: Any = None
    term: int = 0
    index: int = 0


@dataclass
class RaftLog:
    """The in-memory log after the prefix covered by the last snapshot.

    ``entries[0]`` holds index ``last_included_index + 1``.
    """

    entries: list[LogEntry] = field(default_factory=list)
    last_included_index: int = 0
    last_included_term: int = 0

    def _boundary(self) -> LogEntry:
        return LogEntry(term=self.last_included_term, index=self.last_included_index)

    def entry(self, index: int) -> LogEntry:
        """Return the entry at absolute ``index``.

        Index 0 is a sentinel with term -1; the snapshot boundary yields a
        placeholder carrying the snapshot's term. Indices compacted away or
        past the end raise ``IndexError``.
        """
        if index == 0:
            return LogEntry(term=-1, index=0)
        if index == self.last_included_index:
            return self._boundary()
        offset = index - self.last_included_index - 1
        if offset < 0:
            raise IndexError(f"log index {index} was compacted into a snapshot")
        try:
            return self.entries[offset]
        except IndexError:
            raise IndexError(f"log index {index} is past the end of the log") from None

    def last(self) -> LogEntry:
        """Return the last entry, or the snapshot boundary if the log is empty."""
        return self.entries[-1] if self.entries else self._boundary()

    def first(self) -> LogEntry:
        """Return the first entry, or the snapshot boundary if the log is empty."""
        return self.entries[0] if self.entries else self._boundary()


@dataclass
class RequestVoteArgs:
    term: int = 0
    candidate_id: int = 0
    last_log_index: int = 0
    last_log_term: int = 0


@dataclass
class RequestVoteReply:
    term: int = 0
    vote_granted: bool = False


@dataclass
class AppendEntriesArgs:
    term: int = 0
    leader_id: int = 0
    prev_log_index: int = 0
    prev_log_term: int = 0
    entries: list[LogEntry] = field(default_factory=list)
    leader_commit_index: int = 0


@dataclass
class AppendEntriesReply:
    term: int = 0
    success: bool = False
    x_term: int = 0  # term of the conflicting entry, if any
    x_index: int = 0  # first index holding x_term, if any
    x_len: int = 0  # last index of the replier's log


@dataclass
class InstallSnapshotArgs:
    term: int = 0
    leader_id: int = 0
    last_included_index: int = 0
    last_included_term: int = 0
    snapshot: bytes = b""


@dataclass
class InstallSnapshotReply:
    term: int = 0


def election_timeout() -> int:
    """Return a randomised election timeout in milliseconds."""
    return ELECTION_TIMEOUT_BASE + random.randrange(ELECTION_TIMEOUT_RANGE)


def encode_state(
    current_term: int,
    voted_for: int,
    log: list[LogEntry],
    last_included_index: int,
    last_included_term: int,
) -> bytes:
    """Serialise the persistent Raft state."""
    return pickle.dumps(
        (current_term, voted_for, list(log), last_included_index, last_included_term)
    )


def decode_state(data: bytes) -> tuple[int, int, list[LogEntry], int, int] | None:
    """Deserialise state written by :func:`encode_state`.

    Returns ``None`` for empty data (a peer starting without state) and
    raises ``ValueError`` if the data cannot be decoded.
    """
    if not data:
        return None
    try:
        state = pickle.loads(data)
    except Exception as exc:
        raise ValueError("cannot decode raft state") from exc
    if not isinstance(state, tuple) or len(state) != 5:
        raise ValueError("raft state has the wrong shape")
    current_term, voted_for, log, last_included_index, last_included_term = state
    if not all(
        isinstance(v, int)
        for v in (current_term, voted_for, last_included_index, last_included_term)
    ):
        raise ValueError("raft state holds non-integer fields")
    if not isinstance(log, list) or not all(isinstance(e, LogEntry) for e in log):
        raise ValueError("raft state log is malformed")
    return current_term, voted_for, log, last_included_index, last_included_term