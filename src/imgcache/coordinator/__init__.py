"""
Coordinator package.

This package implements the runtime around the cache:
- RequestCoalescer: one fetch per key under concurrent misses (coalescer.py)
- HandleLifecycle: reference-counted handles over cached bytes (handles.py)
- Element discovery protocols and an in-process watcher (discovery.py)
- ImageCacheOrchestrator: serves discovered images from the cache (orchestrator.py)
"""
