"""Application services: cache, embeddings, ingestion, documents and retrieval."""
