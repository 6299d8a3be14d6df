"""
LunaChat - a small threaded web forum with live updates.

This package implements the persistent forum core:
- An embedded ordered key-value engine (SQLite keyspaces) with change feeds
- Typed tables, monotonic id allocation and per-table schema versions
- Users (with a username index), Threads and a Post tree
- Sanitized thread/reply mutations and Server-Sent Events fan-out

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌───────────────────┐
    │   Browser   │────▶│  HTTP (API)  │────▶│ Mutation protocols│
    └─────────────┘     └──────┬───────┘     └─────────┬─────────┘
           ▲                   │                       │
           │ SSE               ▼                       ▼
    ┌──────┴──────┐     ┌──────────────┐     ┌───────────────────┐
    │    Feeds    │◀────│ Keyspace     │◀────│  Entity stores    │
    │ (per table) │     │ subscribers  │     │ Posts/Threads/... │
    └─────────────┘     └──────────────┘     └───────────────────┘

Invariants:
    - Identifiers are 64-bit, allocated once and never reused
    - Stored values use the canonical big-endian binary codec
    - Posts are append-only; children lists only grow
    - Only the migrator increments table versions

How to change safely:
    - Changing a record layout requires a new table version and a migration
    - Never reuse a keyspace name for a different table
"""

from ._version import __version__

__all__ = ["__version__"]
