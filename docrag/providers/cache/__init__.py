"""Cache backends.

Two implementations of ICacheBackend:
    1. MemoryCacheBackend: per-item TTL cache inside the process (default).
    2. RedisCacheBackend: shared cache for multi-process deployments.
"""
