"""Interface definitions for swappable backends.

The cache, embedding provider and object storage are accessed only through
the abstract base classes in this package; concrete adapters under
``docrag/providers/`` are injected by :mod:`docrag.container`.
"""

from docrag.interfaces.cache_backend import ICacheBackend
from docrag.interfaces.embedding_provider import IEmbeddingProvider
from docrag.interfaces.object_storage import IObjectStorage

__all__ = ["ICacheBackend", "IEmbeddingProvider", "IObjectStorage"]
