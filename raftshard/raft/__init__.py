"""Raft peer, its log and message types, and the in-memory persister."""