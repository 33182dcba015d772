"""
CrewSync Test Suite.

This package contains:
- unit/: Unit tests (no network, no server)
- integration/: Integration tests (aiohttp test server, SQLite, httpx mock transport)
"""
