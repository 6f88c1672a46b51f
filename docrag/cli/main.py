# =============================================================================
# docrag/cli/main.py: CLI Commands
# =============================================================================
#
# Subcommands:
#
#   ingest PATH...        Upload files (or every .md/.markdown/.txt file in a
#                         directory) and process them immediately: chunk,
#                         embed, store. --no-process only uploads.
#   query TEXT            Retrieve ranked chunks and print the context block.
#   stuck [--reset]       List documents that have been unprocessed for longer
#                         than ingestion.stuck_after; --reset clears their
#                         chunks and processes them again.
#   stats                 Document counts plus pool and cache stats.
#
# The CLI processes documents in-process instead of starting the JobQueue
# loop, so a command finishes when its work is done.
#
# Usage examples:
#   python -m docrag.cli ingest docs/ notes.md
#   python -m docrag.cli query "how are chunks embedded?" --max-chunks 5
#   python -m docrag.cli stuck --reset
#   python -m docrag.cli stats
# =============================================================================

"""Standalone CLI for managing and querying a docrag store."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from docrag.config.loader import load_settings
from docrag.config.settings import Settings
from docrag.container import Container, build_container
from docrag.models.retrieval import SearchOptions
from docrag.utils.errors import DocRagError
from docrag.utils.logging import configure_logging


def _collect_files(paths: list[str], allowed_extensions: list[str]) -> list[Path]:
    """Expand directories into their uploadable files, sorted by path."""
    files: list[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(
                sorted(p for p in path.rglob("*") if p.is_file() and p.suffix.lower() in allowed_extensions)
            )
        else:
            files.append(path)
    return files


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


async def _handle_ingest(args: argparse.Namespace, container: Container) -> int:
    files = _collect_files(args.paths, container.settings.ingestion_allowed_extensions)
    if not files:
        print("No files to ingest.", file=sys.stderr)
        return 1

    failures = 0
    for path in files:
        print(f"Ingesting: {path}")
        try:
            data = path.read_bytes()
        except OSError as exc:
            print(f"  Error: cannot read file: {exc}", file=sys.stderr)
            failures += 1
            continue
        try:
            document = await container.documents.upload(
                path.name, data, priority=args.priority, skip_processing=True
            )
            if args.no_process:
                print(f"  Uploaded as {document.id} (not processed)")
                continue
            processed = await container.processor.process(document.id)
        except DocRagError as exc:
            print(f"  Error: {exc}", file=sys.stderr)
            failures += 1
            continue
        print(f"  Document ID:   {processed.id}")
        print(f"  Chunks:        {processed.chunk_count}")
        print(f"  Time:          {processed.processing_time_ms} ms")

    print(f"\nIngested {len(files) - failures} of {len(files)} file(s).")
    return 1 if failures else 0


async def _handle_query(args: argparse.Namespace, container: Container) -> int:
    overrides = {}
    if args.max_chunks is not None:
        overrides["max_chunks"] = args.max_chunks
    if args.threshold is not None:
        overrides["similarity_threshold"] = args.threshold
    if args.recent:
        overrides["temporal_boost"] = True
    # Validate so bad CLI values fail like bad config values.
    options = SearchOptions.model_validate(
        {**container.retrieval.default_options.model_dump(), **overrides}
    )
    result = await container.retrieval.retrieve(args.text, options)
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    if not result.chunks:
        print("No relevant chunks found.")
        return 0

    print(result.context_text)
    print()
    print("=" * 40)
    print(f"  Chunks:   {len(result.chunks)} of {result.total_chunks_available} candidates")
    print(f"  Quality:  {result.quality_score:.2f}")
    print(f"  Sources:  {', '.join(result.sources)}")
    print(f"  Time:     {result.search_time_ms} ms{' (cached)' if result.cache_hit else ''}")
    return 0


async def _handle_stuck(args: argparse.Namespace, container: Container) -> int:
    stuck = await container.processor.get_stuck_documents()
    if not stuck:
        print("No stuck documents.")
        return 0

    print(f"{len(stuck)} stuck document(s):")
    for document in stuck:
        print(f"  {document.id}  {document.title:<40} uploaded {document.upload_date:%Y-%m-%d %H:%M}")
    if not args.reset:
        return 0

    reset_ids = await container.documents.reset_stuck_documents(requeue=False)
    failures = 0
    for document_id in reset_ids:
        try:
            processed = await container.processor.process(document_id)
        except DocRagError as exc:
            print(f"  {document_id}: failed: {exc}", file=sys.stderr)
            failures += 1
            continue
        print(f"  {document_id}: reprocessed ({processed.chunk_count} chunks)")
    return 1 if failures else 0


async def _handle_stats(container: Container) -> int:
    documents = await container.documents.get_stats()
    pool = container.pool.stats()
    cache = container.cache.stats()
    print("Document Statistics")
    print("=" * 40)
    print(f"  Total documents:   {documents.total_documents}")
    print(f"  Processed:         {documents.processed_documents}")
    print(f"  Pending:           {documents.pending_documents}")
    print(f"  Failed:            {documents.failed_documents}")
    print(f"  Total chunks:      {documents.total_chunks}")
    print(f"  Chunks/document:   {documents.avg_chunks_per_document}")
    print()
    print("Connection Pool")
    print("=" * 40)
    print(f"  Connections:       {pool.total_connections} ({pool.active_connections} active)")
    print(f"  Queries:           {pool.total_queries} (avg {pool.avg_query_time_ms:.2f} ms)")
    print(f"  Errors:            {pool.errors}")
    print()
    print("Cache")
    print("=" * 40)
    print(f"  Backend:           {cache.backend}")
    print(f"  Hit rate:          {cache.hit_rate * 100:.1f}% ({cache.hits} hits, {cache.misses} misses)")
    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docrag",
        description="Ingest documents into and query a docrag store.",
    )
    parser.add_argument(
        "--config", default="config/config.yaml", help="YAML configuration file"
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # -- ingest --
    ingest_parser = subparsers.add_parser("ingest", help="Upload and process files")
    ingest_parser.add_argument("paths", nargs="+", help="Files or directories")
    ingest_parser.add_argument("--priority", type=int, default=0, help="Job priority")
    ingest_parser.add_argument(
        "--no-process",
        action="store_true",
        dest="no_process",
        help="Upload only; leave processing to a running job queue",
    )

    # -- query --
    query_parser = subparsers.add_parser("query", help="Retrieve context for a query")
    query_parser.add_argument("text", help="Query text")
    query_parser.add_argument("--max-chunks", type=int, dest="max_chunks", help="Chunks to return")
    query_parser.add_argument("--threshold", type=float, help="Minimum cosine similarity")
    query_parser.add_argument("--recent", action="store_true", help="Favour newer documents")

    # -- stuck --
    stuck_parser = subparsers.add_parser("stuck", help="List documents stuck in processing")
    stuck_parser.add_argument("--reset", action="store_true", help="Reset and reprocess them")

    # -- stats --
    subparsers.add_parser("stats", help="Show store statistics")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    container = build_container(settings)
    await container.start(run_queue=False)
    try:
        if args.command == "ingest":
            return await _handle_ingest(args, container)
        if args.command == "query":
            return await _handle_query(args, container)
        if args.command == "stuck":
            return await _handle_stuck(args, container)
        return await _handle_stats(container)
    finally:
        await container.close()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point: parse arguments, load settings and dispatch."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        settings = load_settings(args.config)
    except DocRagError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    configure_logging(log_level=settings.log_level, json_output=settings.log_json)

    sys.exit(asyncio.run(_run(args, settings)))


if __name__ == "__main__":
    main()
