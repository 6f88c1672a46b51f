"""Utility modules for docrag.

- **errors** -- Exception hierarchy split into transient and permanent failures
- **logging** -- structlog configuration and named logger factory
- **retry** -- tenacity-backed RetryPolicy shared across components
- **text_normalizer** -- Markdown pre-processing and query normalisation
"""
