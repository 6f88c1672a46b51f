# =============================================================================
# docrag/cli/__init__.py: CLI Package
# =============================================================================
#
# Operator commands for a local docrag store, run as `python -m docrag.cli`
# or through the `docrag` console script:
#
#   ingest : upload and process Markdown/text files or directories
#   query  : retrieve ranked chunks and the assembled context for a query
#   stuck  : list (and optionally reset) documents stuck in processing
#   stats  : document, pool and cache statistics
#
# Every command builds the same component graph as an embedding service
# would (docrag.container.build_container) from config/config.yaml, .env
# and the environment.
# =============================================================================

"""Command-line interface for docrag."""
