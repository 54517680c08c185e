import pickle

import pytest

from raftshard.raft.log import (
    ELECTION_TIMEOUT_BASE,
    ELECTION_TIMEOUT_RANGE,
    AppendEntriesReply,
    ApplyMsg,
    LogEntry,
    RaftLog,
    Role,
    decode_state,
    election_timeout,
    encode_state,
)


def _log(lii=0, lit=0, count=3, term=1):
    entries = [LogEntry(command=f"c{i}", term=term, index=lii + i) for i in range(1, count + 1)]
    return RaftLog(entries=entries, last_included_index=lii, last_included_term=lit)


def test_role_values():
    assert Role(1) is Role.LEADER
    assert Role(2) is Role.CANDIDATE
    assert Role(3) is Role.FOLLOWER


def test_apply_msg_defaults():
    msg = ApplyMsg()
    assert msg.command_valid is False
    assert msg.snapshot_valid is False
    assert msg.command is None


def test_entry_zero_is_sentinel():
    log = _log()
    sentinel = log.entry(0)
    assert sentinel.term == -1
    assert sentinel.index == 0


def test_entry_at_snapshot_boundary():
    log = _log(lii=5, lit=3)
    boundary = log.entry(5)
    assert boundary.index == 5
    assert boundary.term == 3
    assert boundary.command is None


def test_entry_by_absolute_index():
    log = _log(lii=5, lit=3)
    for entry in log.entries:
        assert log.entry(entry.index) is entry


def test_entry_compacted_raises():
    log = _log(lii=5, lit=3)
    with pytest.raises(IndexError):
        log.entry(2)


def test_entry_past_end_raises():
    log = _log(lii=0, count=2)
    with pytest.raises(IndexError):
        log.entry(3)


def test_last_and_first_on_empty_log_use_snapshot():
    log = RaftLog(last_included_index=7, last_included_term=4)
    for e in (log.last(), log.first()):
        assert e.index == 7
        assert e.term == 4


def test_last_and_first_on_filled_log():
    log = _log(lii=2, count=4)
    assert log.first() is log.entries[0]
    assert log.last() is log.entries[-1]
    assert log.last().index == log.first().index + len(log.entries) - 1


def test_append_entries_reply_defaults():
    reply = AppendEntriesReply()
    assert reply.success is False
    assert reply.x_len == 0


def test_election_timeout_in_range():
    for _ in range(500):
        t = election_timeout()
        assert ELECTION_TIMEOUT_BASE <= t < ELECTION_TIMEOUT_BASE + ELECTION_TIMEOUT_RANGE


def test_encode_decode_round_trip():
    entries = [LogEntry(command={"k": "v"}, term=2, index=4), LogEntry(command=9, term=3, index=5)]
    data = encode_state(3, 1, entries, 3, 2)
    assert decode_state(data) == (3, 1, entries, 3, 2)


def test_decode_empty_returns_none():
    assert decode_state(b"") is None


def test_decode_garbage_raises():
    with pytest.raises(ValueError):
        decode_state(b"\x00not a state")


def test_decode_wrong_shape_raises():
    with pytest.raises(ValueError):
        decode_state(pickle.dumps((1, 2, 3)))


def test_decode_bad_log_raises():
    with pytest.raises(ValueError):
        decode_state(pickle.dumps((1, 2, ["x"], 0, 0)))