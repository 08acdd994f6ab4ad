"""
Cache package for image persistence.

This package provides:
- Key derivation from canonical URLs (keys.py)
- Extension-based content type lookup (content_types.py)
- Store interfaces (base.py)
- Blob stores: filesystem and in-memory (file_cache.py)
- Metadata stores: SQLite and in-memory (kv_cache.py)
- ImageCache composing all of the above (store.py)
"""
