"""
Binlog backup test suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Integration tests (in-memory sources and object store)
- e2e/: End-to-end tests (real MySQL server and S3 bucket)
"""
