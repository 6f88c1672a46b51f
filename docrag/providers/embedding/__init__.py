"""Embedding provider implementations.

Embeddings turn chunk text into fixed-length vectors; the document store
ranks chunks by cosine similarity between these vectors and the query's.
"""
