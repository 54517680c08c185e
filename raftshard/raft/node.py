"""A Raft peer: leader election, log replication and snapshots."""

from __future__ import annotations

import queue
import threading
import time
from typing import Any, Callable

from raftshard.raft.log import (
    BROADCAST_TIME,
    FAILED,
    AppendEntriesArgs,
    AppendEntriesReply,
    ApplyMsg,
    InstallSnapshotArgs,
    InstallSnapshotReply,
    LogEntry,
    RaftLog,
    RequestVoteArgs,
    RequestVoteReply,
    Role,
    decode_state,
    election_timeout,
    encode_state,
)
from raftshard.raft.persister import Persister

QUICK_COMMIT_ROUNDS = 20


def _spawn(target: Callable[..., Any], *args: Any) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()


class Peer:
    """A connection to another server's RPC handlers.

    ``call`` returns the handler's reply, or ``None`` when the target is
    missing or the connection is disabled, just as a lost message would.
    """

    _METHODS = frozenset(
        {
            "request_vote",
            "append_entries",
            "install_snapshot",
            "join",
            "leave",
            "move",
            "query",
            "get",
            "put_append",
            "put_shard",
        }
    )

    def __init__(self, target: Any = None, connected: bool = True) -> None:
        self.target = target
        self.connected = connected

    def call(self, method: str, args: Any) -> Any:
        """Invoke ``method`` on the target with ``args``; ``None`` on failure."""
        if method not in self._METHODS:
            raise ValueError(f"unknown RPC method {method!r}")
        target = self.target
        if not self.connected or target is None:
            return None
        handler = getattr(target, method, None)
        if handler is None:
            return None
        return handler(args)


class Raft:
    """One Raft peer. Committed commands are put on ``apply_queue``."""

    def __init__(
        self,
        peers: list[Peer],
        me: int,
        persister: Persister,
        apply_queue: "queue.Queue[ApplyMsg]",
    ) -> None:
        self._mu = threading.Lock()
        self._cond = threading.Condition(self._mu)
        self._peers = peers
        self._persister = persister
        self._me = me
        self._apply_queue = apply_queue
        self._dead = threading.Event()

        self._broadcast_time = BROADCAST_TIME
        self._election_timeout = election_timeout()
        self._role = Role.FOLLOWER
        self._current_term = 0
        self._voted_for = -1
        self._log = RaftLog()
        self._next_index = [0] * len(peers)
        self._match_index = [0] * len(peers)
        self._commit_index = 0
        self._last_applied = 0
        self._quick_commit = 0

        with self._mu:
            self._read_persist(persister.read_raft_state())
        _spawn(self._ticker)

    # ----- public API -------------------------------------------------

    def get_state(self) -> tuple[int, bool]:
        """Return the current term and whether this peer thinks it leads."""
        if self.killed():
            return FAILED, False
        with self._mu:
            return self._current_term, self._role == Role.LEADER

    def start(self, command: Any) -> tuple[int, int, bool]:
        """Append ``command`` if leader; return (index, term, is_leader)."""
        _, is_leader = self.get_state()
        if not is_leader or self.killed():
            return -1, -1, False
        with self._mu:
            index = self._log.last().index + 1
            entry = LogEntry(command=command, term=self._current_term, index=index)
            self._log.entries.append(entry)
            self._persist()
            self._quick_commit = QUICK_COMMIT_ROUNDS
        for i in range(len(self._peers)):
            if i != self._me:
                _spawn(self._send_entries, i)
        return entry.index, entry.term, True

    def kill(self) -> None:
        """Stop this peer's background activity."""
        self._dead.set()

    def killed(self) -> bool:
        return self._dead.is_set()

    def cond_install_snapshot(
        self, last_included_term: int, last_included_index: int, snapshot: bytes
    ) -> bool:
        """Snapshots are installed by the handler itself; always accept."""
        return True

    def snapshot(self, index: int, snapshot: bytes) -> None:
        """Discard log entries up to and including ``index``."""
        with self._mu:
            if index <= self._log.last_included_index:
                return
            last_index = self._log.last().index
            kept = [self._log.entry(i) for i in range(index + 1, last_index + 1)]
            self._log.last_included_term = self._log.entry(index).term
            self._log.last_included_index = index
            self._log.entries = kept
            self._persist_snapshot(snapshot)

    def raft_state_size(self) -> int:
        return self._persister.raft_state_size()

    # ----- RPC handlers -----------------------------------------------

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        with self._mu:
            reply = RequestVoteReply(term=self._current_term)
            last = self._log.last()
            up_to_date = last.term < args.last_log_term or (
                last.term == args.last_log_term and last.index <= args.last_log_index
            )
            if self._current_term < args.term:
                self._role = Role.FOLLOWER
                self._current_term = args.term
                self._voted_for = -1
                if up_to_date:
                    reply.vote_granted = True
                    self._voted_for = args.candidate_id
                self._persist()
                self._election_timeout = election_timeout()
            return reply

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply:
        with self._mu:
            log = self._log
            reply = AppendEntriesReply(term=self._current_term)
            self._election_timeout = election_timeout()
            if args.term < self._current_term or log.last_included_index > args.prev_log_index:
                return reply
            if self._current_term < args.term or self._role == Role.CANDIDATE:
                reply.success = True
                self._role = Role.FOLLOWER
                self._current_term = args.term
                self._voted_for = -1
                self._cond.notify_all()
            last_index = log.last().index
            if last_index < args.prev_log_index or log.entry(args.prev_log_index).term != args.prev_log_term:
                reply.success = False
                reply.x_len = last_index
                if last_index >= args.prev_log_index:
                    reply.x_term = log.entry(args.prev_log_index).term
                    x_index = args.prev_log_index
                    while x_index > log.last_included_index and log.entry(x_index).term == reply.x_term:
                        x_index -= 1
                    reply.x_index = x_index + 1
                return reply
            for position, entry in enumerate(args.entries):
                if log.last().index < entry.index or log.entry(entry.index).term != entry.term:
                    kept = [log.entry(i) for i in range(log.last_included_index + 1, entry.index)]
                    log.entries = kept + list(args.entries[position:])
            if args.leader_commit_index > self._commit_index:
                self._commit_index = min(args.leader_commit_index, log.last().index)
            self._persist()
            reply.success = True
            return reply

    def install_snapshot(self, args: InstallSnapshotArgs) -> InstallSnapshotReply:
        with self._mu:
            log = self._log
            reply = InstallSnapshotReply(term=self._current_term)
            self._election_timeout = election_timeout()
            if self._current_term > args.term or args.last_included_index < log.last_included_index:
                return reply
            if self._current_term < args.term or self._role == Role.CANDIDATE:
                self._role = Role.FOLLOWER
                self._current_term = args.term
                self._voted_for = -1
                self._cond.notify_all()
            kept: list[LogEntry] = []
            last_index = log.last().index
            if log.last_included_index < args.last_included_index < last_index:
                boundary = log.entry(args.last_included_index)
                if boundary.term == args.last_included_term:
                    kept = [log.entry(i) for i in range(args.last_included_index + 1, last_index + 1)]
            log.entries = kept
            log.last_included_index = args.last_included_index
            log.last_included_term = args.last_included_term
            self._persist_snapshot(args.snapshot)
        self._apply_queue.put(
            ApplyMsg(
                snapshot_valid=True,
                snapshot=args.snapshot,
                snapshot_index=args.last_included_index,
                snapshot_term=args.last_included_term,
            )
        )
        return reply

    # ----- persistence ------------------------------------------------

    def _encoded_state(self) -> bytes:
        return encode_state(
            self._current_term,
            self._voted_for,
            self._log.entries,
            self._log.last_included_index,
            self._log.last_included_term,
        )

    def _persist(self) -> None:
        self._persister.save_raft_state(self._encoded_state())

    def _persist_snapshot(self, snapshot: bytes) -> None:
        self._persister.save_state_and_snapshot(self._encoded_state(), snapshot)

    def _read_persist(self, data: bytes) -> None:
        try:
            state = decode_state(data)
        except ValueError:
            return
        if state is None:
            return
        term, voted_for, entries, lii, lit = state
        self._current_term = term
        self._voted_for = voted_for
        self._log = RaftLog(entries=entries, last_included_index=lii, last_included_term=lit)

    # ----- background work --------------------------------------------

    def _ticker(self) -> None:
        while not self.killed():
            self._update_last_applied()
            with self._mu:
                role = self._role
            if role == Role.LEADER:
                self._leader_task()
            elif role == Role.CANDIDATE:
                self._candidate_task()
            else:
                self._follower_task()

    def _leader_task(self) -> None:
        with self._mu:
            quick = self._quick_commit > 0
            if quick:
                self._quick_commit -= 1
        if quick:
            self._update_commit_index()
            time.sleep(0.003)
        else:
            self._try_send_entries()
            self._update_commit_index()
            time.sleep(self._broadcast_time / 1000)

    def _follower_task(self) -> None:
        with self._mu:
            if self._election_timeout < self._broadcast_time:
                self._role = Role.CANDIDATE
                return
            self._election_timeout -= self._broadcast_time
        time.sleep(self._broadcast_time / 1000)

    def _candidate_task(self) -> None:
        with self._mu:
            self._election_timeout = election_timeout()
            self._current_term += 1
            self._voted_for = self._me
            self._persist()
            term = self._current_term
            timeout_ms = self._election_timeout
            last = self._log.last()
        votes = [1]
        timed_out = threading.Event()
        majority = len(self._peers) // 2

        def ask(server: int) -> None:
            args = RequestVoteArgs(
                term=term,
                candidate_id=self._me,
                last_log_index=last.index,
                last_log_term=last.term,
            )
            reply = self._peers[server].call("request_vote", args)
            with self._mu:
                if reply is not None:
                    if reply.vote_granted:
                        votes[0] += 1
                    if reply.term > self._current_term:
                        self._role = Role.FOLLOWER
                        self._election_timeout = election_timeout()
                        self._current_term = reply.term
                        self._persist()
                self._cond.notify_all()

        for i in range(len(self._peers)):
            if i != self._me:
                _spawn(ask, i)

        def expire() -> None:
            time.sleep(timeout_ms / 1000)
            timed_out.set()
            with self._mu:
                self._cond.notify_all()

        _spawn(expire)

        def still_running() -> bool:
            return (
                self._current_term == term
                and self._role == Role.CANDIDATE
                and not timed_out.is_set()
                and not self.killed()
            )

        while True:
            with self._mu:
                if votes[0] <= majority and still_running():
                    self._cond.wait(timeout=0.05)
                if not still_running():
                    return
                if votes[0] > majority:
                    self._role = Role.LEADER
                    self._commit_index = 0
                    next_index = self._log.last().index + 1
                    self._match_index = [0] * len(self._peers)
                    self._next_index = [next_index] * len(self._peers)
                    break
        self._try_send_entries()

    def _update_commit_index(self) -> None:
        with self._mu:
            majority = len(self._peers) // 2
            new_commit = self._commit_index
            for n in range(self._commit_index + 1, self._log.last().index + 1):
                if n > self._log.last_included_index and self._log.entry(n).term == self._current_term:
                    count = 1
                    for match in self._match_index:
                        if match >= n:
                            count += 1
                            if count > majority:
                                new_commit = n
                                break
            self._commit_index = new_commit

    def _update_last_applied(self) -> None:
        with self._mu:
            self._last_applied = max(self._last_applied, self._log.last_included_index)
            while (
                self._last_applied < self._commit_index
                and self._last_applied < self._log.last().index
                and self._last_applied >= self._log.last_included_index
            ):
                index = self._last_applied + 1
                msg = ApplyMsg(
                    command_valid=True,
                    command=self._log.entry(index).command,
                    command_index=index,
                )
                self._mu.release()
                try:
                    self._apply_queue.put(msg)
                finally:
                    self._mu.acquire()
                self._last_applied += 1

    def _try_send_entries(self) -> None:
        for i in range(len(self._peers)):
            with self._mu:
                next_index = self._next_index[i]
                first_index = self._log.first().index
            if i == self._me:
                continue
            if first_index > next_index:
                _spawn(self._send_snapshot, i)
            else:
                _spawn(self._send_entries, i)

    def _send_entries(self, server: int) -> None:
        while True:
            with self._mu:
                log = self._log
                if self._role != Role.LEADER or self._next_index[server] <= log.last_included_index:
                    return
                prev_index = self._next_index[server] - 1
                entries = list(log.entries[prev_index - log.last_included_index:])
                args = AppendEntriesArgs(
                    term=self._current_term,
                    leader_id=self._me,
                    prev_log_index=prev_index,
                    prev_log_term=log.entry(prev_index).term,
                    entries=entries,
                    leader_commit_index=self._commit_index,
                )
            reply = self._peers[server].call("append_entries", args)
            if reply is None:
                return
            with self._mu:
                log = self._log
                if reply.term > self._current_term:
                    self._role = Role.FOLLOWER
                    self._current_term = reply.term
                    self._voted_for = -1
                    self._persist()
                    self._election_timeout = election_timeout()
                if self._role != Role.LEADER or reply.term != self._current_term:
                    return
                if reply.success:
                    self._next_index[server] = max(self._next_index[server], prev_index + len(entries) + 1)
                    self._match_index[server] = max(self._match_index[server], prev_index + len(entries))
                    return
                if reply.x_len < prev_index:
                    self._next_index[server] = max(reply.x_len, 1)
                else:
                    candidate = prev_index
                    while candidate > log.last_included_index and log.entry(candidate).term > reply.x_term:
                        candidate -= 1
                    if log.entry(candidate).term == reply.x_term:
                        self._next_index[server] = max(candidate, log.last_included_index + 1)
                    else:
                        self._next_index[server] = reply.x_index

    def _send_snapshot(self, server: int) -> None:
        with self._mu:
            args = InstallSnapshotArgs(
                term=self._current_term,
                leader_id=self._me,
                last_included_index=self._log.last_included_index,
                last_included_term=self._log.last_included_term,
                snapshot=self._persister.read_snapshot(),
            )
        reply = self._peers[server].call("install_snapshot", args)
        if reply is None:
            return
        with self._mu:
            if reply.term > self._current_term:
                self._current_term = reply.term
                self._role = Role.FOLLOWER
                self._voted_for = -1
                self._persist()
                self._election_timeout = election_timeout()
            self._next_index[server] = self._log.last_included_index + 1
            self._match_index[server] = self._log.last_included_index