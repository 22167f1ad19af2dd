"""
AppAtOnce SDK Test Suite.

This package contains:
- unit/: Unit tests (no network, mocked HTTP and Socket.IO clients)
- integration/: Integration tests (query builder against a mocked REST API,
  realtime manager against the in-memory socket transport)
"""
