"""
boardsync test suite.

This package contains:
- unit/: Unit tests (SQLite in a temporary directory, no network)
- integration/: Sync engine tests against the in-memory remote, including
  several devices sharing one remote
"""
