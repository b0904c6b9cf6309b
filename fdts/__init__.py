"""
FDTS datastore.

Storage foundation of the Faculty Development Tracking System:
- SQLite connection pooling and the transactional query façade
- Versioned schema migrations
- Backups, inspection and the ``fdts-db`` CLI
"""

__version__ = "0.1.0"
