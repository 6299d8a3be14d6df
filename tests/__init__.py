"""
LunaChat Test Suite.

This package contains:
- unit/: Unit tests (codec, engine, stores, auth, feeds)
- integration/: Integration tests (protocols, migrations, HTTP app)
"""
