"""Raft consensus, a shard controller and a sharded key/value service."""

__version__ = "0.1.0"