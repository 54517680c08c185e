# raftshard

A Raft replicated log, a shard controller built on it, and a sharded
key/value store whose replica groups each run their own Raft cluster.
Everything runs in one Python process, with one thread per background
task. The package uses only the standard library.

## Installing

    pip install .

For the tests:

    pip install ".[test]"
    pytest

## Parts

### `raftshard.raft`

- `persister.Persister` holds a peer's encoded Raft state and its latest
  service snapshot, both as `bytes`.
  - `copy()` returns a new persister with the same contents.
  - `save_raft_state`, `read_raft_state` and `raft_state_size` act on the
    Raft state.
  - `save_state_and_snapshot` saves the state and the snapshot in one
    step. `read_snapshot` and `snapshot_size` act on the snapshot.
- `log.RaftLog` holds the entries that follow the last snapshot, together
  with `last_included_index` and `last_included_term`.
  - `entry(index)` takes an absolute index. Index 0 is a sentinel with
    term -1. The snapshot boundary returns a placeholder that carries the
    snapshot's term. Compacted indices, and indices past the end, raise
    `IndexError`.
  - `last()` and `first()` fall back to the snapshot boundary when the
    log is empty.
- `log` also defines the following:
  - `LogEntry`, `ApplyMsg` and `Role`.
  - The RPC argument and reply dataclasses for RequestVote,
    AppendEntries and InstallSnapshot.
  - `election_timeout()`, which returns 200–399 ms.
  - `encode_state` and `decode_state`, which pickle the persistent fields.
    `decode_state` returns `None` for empty data and raises `ValueError`
    for bad data.
- `node.Raft(peers, me, persister, apply_queue)` is one peer. Committed
  commands and installed snapshots are put on `apply_queue` as `ApplyMsg`.
  Its methods:
  - `start(command)` returns `(index, term, is_leader)`.
  - `get_state()` returns `(term, is_leader)`, or `(-1, False)` once the
    peer has been killed.
  - `snapshot(index, data)` discards log entries up to `index` and saves
    `data` as the snapshot.
  - `kill()` and `killed()` stop the peer and report whether it has been
    stopped.
  - `raft_state_size()` returns the size of the persisted Raft state.
  - `cond_install_snapshot(...)` always returns `True`.
  - `request_vote`, `append_entries` and `install_snapshot` are the RPC
    handlers.
- `node.Peer(target, connected=True)` connects to another server object.
  - `call(method, args)` invokes the named handler directly.
  - It returns `None` when the peer is disconnected or has no target,
    which has the same effect as a lost message.
  - An unknown method name raises `ValueError`.

### `raftshard.shardctrler`

- `common.Config` holds a config number, a tuple of `NSHARDS` (10) group
  IDs and a `gid -> server names` mapping. Any other shard count raises
  `ValueError`.
- `server.ShardCtrler(servers, me, persister)` is one controller replica.
  - `join`, `leave`, `move` and `query` are its RPC handlers.
  - `apply(op)` applies a committed `Op` and drops duplicate sequence
    numbers for each client.
  - `raft()` returns the underlying peer, and `kill()` stops the replica.
- `server.balance(shards, gids)` spreads the shards over the sorted group
  IDs, and lower IDs take the extra shards. With no groups, every shard
  goes to group 0.
- `client.Clerk(servers)` provides `query(num)`, `join(servers)`,
  `leave(gids)` and `move(shard, gid)`. `query(-1)` returns the newest
  config. Each call retries every server until one succeeds.

### `raftshard.shardkv`

- `server.ShardKV(servers, me, persister, maxraftstate, gid, ctrlers,
  make_end)` is one replica of a group. It does the following:
  - It polls the controller for new configurations.
  - It hands shards it no longer owns to their new group with
    `put_shard`.
  - It takes a snapshot once the Raft state reaches 80% of
    `maxraftstate`. A `maxraftstate` of 0 or less turns snapshots off.

  Its methods:
  - `get`, `put_append` and `put_shard` are the RPC handlers.
  - `apply(op)` applies a committed `Op`.
  - `encode_snapshot()` and `restore_snapshot(data)` save and load the
    server state.
  - `kill()` stops the replica.
- `client.Clerk(ctrlers, make_end)` provides `get`, `put`, `append` and
  `put_append`. It sends each request to the group that owns the key's
  shard and fetches the newest config when a request fails.
- `client.key2shard(key)` returns the first byte of the key modulo 10, or
  0 for the empty key.
- `common.Err` lists the reply codes: `OK`, `ErrNoKey`, `ErrWrongGroup`,
  `ErrWrongLeader` and `ErrTimeout`.

## Example

```python
import queue

from raftshard.raft.node import Peer, Raft
from raftshard.raft.persister import Persister
from raftshard.shardkv.client import key2shard

peers = [Peer() for _ in range(3)]
queues = [queue.Queue() for _ in peers]
for i, peer in enumerate(peers):
    peer.target = Raft(peers, i, Persister(), queues[i])

key2shard("apple")  # 7
```

## What it does not do

- There is no network transport. A `Peer` calls handlers on an object in
  the same process. Setting `connected` to `False` is the only way to
  simulate a failure, and there are no delays, drops or reordering.
- There is no command-line program and no standalone server process.
- Persistence lives in memory only. `Persister` never writes to disk.