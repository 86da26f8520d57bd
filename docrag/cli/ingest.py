"""Standalone CLI for managing docrag owner chunk sets.

Usage::

    python -m docrag.cli.ingest document report.txt --actor alice

    python -m docrag.cli.ingest document a.txt b.txt c.txt --actor alice \\
        --concurrency 2

    python -m docrag.cli.ingest knowledge --owner bot-1 --actor alice \\
        --title "Refund policy" --file refunds.txt

    python -m docrag.cli.ingest search --owner report "quarterly revenue"

    python -m docrag.cli.ingest backfill --owner report

    python -m docrag.cli.ingest delete --owner report --yes

    python -m docrag.cli.ingest stats --owner report

The in-memory chunk store does not outlive the process, so set
``CHUNK_STORE=chromadb`` for anything beyond a single-shot ingest.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any

from docrag.config.loader import load_settings
from docrag.config.settings import Settings


def _read_text(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def _print_ingestion(label: str, result: Any) -> None:  # noqa: ANN401
    status = "ok" if result.success else "FAILED"
    print(f"{label}: {status}")
    print(f"  Owner:          {result.owner_id}")
    print(f"  Chunks stored:  {result.chunk_count}")
    print(f"  Embedded:       {result.embedded_count}")
    if result.pending_count:
        print(f"  Pending:        {result.pending_count}")
    if result.error:
        print(f"  Error:          {result.error}")
    print(f"  Time:           {result.ingest_time:.2f}s")


# ---------------------------------------------------------------------------
# Subcommand handlers
# ---------------------------------------------------------------------------


async def _handle_document(args: argparse.Namespace, services: dict[str, Any]) -> int:
    """Ingest one or more document files, each replacing its owner's chunks."""
    from docrag.models.rag import IngestionOptions
    from docrag.utils.concurrency import throttled_gather

    if args.owner and len(args.files) > 1:
        print("Error: --owner can only be used with a single file.", file=sys.stderr)
        return 2

    app_settings: Settings = services["settings"]
    options = IngestionOptions(
        chunk_size=args.chunk_size or app_settings.chunk_size,
        chunk_overlap=(
            args.chunk_overlap if args.chunk_overlap is not None else app_settings.chunk_overlap
        ),
        extract_metadata=not args.no_metadata,
        generate_embeddings=not args.no_embed,
    )
    service = services["ingestion_service"]

    owners = [args.owner or Path(f).stem for f in args.files]
    coros = [
        service.process_document(
            owner_id=owner,
            actor_id=args.actor,
            raw_text=_read_text(path),
            options=options,
            source_name=Path(path).name,
            source_type=args.type,
        )
        for owner, path in zip(owners, args.files)
    ]
    results = await throttled_gather(coros, limit=args.concurrency)

    exit_code = 0
    for path, result in zip(args.files, results):
        if isinstance(result, BaseException):
            print(f"{path}: FAILED ({result})", file=sys.stderr)
            exit_code = 1
            continue
        _print_ingestion(path, result)
        if not result.success:
            exit_code = 1
    return exit_code


async def _handle_knowledge(args: argparse.Namespace, services: dict[str, Any]) -> int:
    """Append a knowledge item to a bot."""
    text = _read_text(args.file) if args.file else args.text
    if not text:
        print("Error: provide --file or --text.", file=sys.stderr)
        return 2

    result = await services["ingestion_service"].process_knowledge_item(
        owner_id=args.owner,
        actor_id=args.actor,
        title=args.title,
        raw_text=text,
        source_type=args.type,
    )
    _print_ingestion(args.title, result)
    return 0 if result.success else 1


async def _handle_search(args: argparse.Namespace, services: dict[str, Any]) -> int:
    """Print the best-matching chunks for a query."""
    from docrag.models.rag import SearchMode
    from docrag.utils.errors import NoEmbeddedChunksError

    retriever = services["retriever"]
    try:
        results = await retriever.search(
            args.owner,
            args.query,
            mode=SearchMode(args.mode),
            k=args.top_k,
            min_similarity=args.min_similarity,
        )
    except NoEmbeddedChunksError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1

    if args.max_tokens:
        window = retriever.build_context_window(results, args.max_tokens)
        results = window.sources
        print(f"Context window: {window.token_count} tokens")

    if not results:
        print("No chunks above the similarity threshold.")
        return 0

    for rank, item in enumerate(results, start=1):
        snippet = item.chunk.text[:160].replace("\n", " ")
        print(f"{rank:>2}. [{item.similarity:.3f}] #{item.chunk.chunk_index} {snippet}")
    return 0


async def _handle_delete(args: argparse.Namespace, services: dict[str, Any]) -> int:
    """Delete every chunk of an owner.  Destructive; confirms unless --yes."""
    service = services["ingestion_service"]
    stats = await service.get_owner_stats(args.owner)
    if stats.chunk_count == 0:
        print(f"No chunks found for owner '{args.owner}'. Nothing to delete.")
        return 0

    if not args.yes:
        confirm = input(f"  Delete all {stats.chunk_count} chunks? [y/N] ").strip().lower()
        if confirm not in ("y", "yes"):
            print("  Aborted.")
            return 0

    result = await service.delete_owner(args.owner)
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    print(f"Deleted {result.deleted_count} chunks.")
    return 0


async def _handle_backfill(args: argparse.Namespace, services: dict[str, Any]) -> int:
    """Embed every pending chunk of an owner."""
    result = await services["ingestion_service"].backfill_owner(args.owner)
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    print(f"Backfilled {result.updated_count} of {result.requested_count} pending chunks.")
    return 0


async def _handle_stats(args: argparse.Namespace, services: dict[str, Any]) -> int:
    """Display chunk statistics for an owner."""
    stats = await services["ingestion_service"].get_owner_stats(args.owner)

    print(f"Owner Statistics: {stats.owner_id}")
    print("=" * 40)
    print(f"  Total chunks:     {stats.chunk_count}")
    print(f"  Embedded:         {stats.embedded_count}")
    print(f"  Pending:          {stats.pending_count}")
    print(f"  Content length:   {stats.total_content_length}")

    if stats.source_types:
        print("\n  Chunks by source type:")
        for source_type, count in sorted(stats.source_types.items()):
            print(f"    {source_type:<15} {count}")
    return 0


_HANDLERS = {
    "document": _handle_document,
    "knowledge": _handle_knowledge,
    "search": _handle_search,
    "delete": _handle_delete,
    "backfill": _handle_backfill,
    "stats": _handle_stats,
}


async def _run(args: argparse.Namespace, app_settings: Settings) -> int:
    """Build services, run one handler, and flush usage records."""
    from docrag.main import build_services

    services = build_services(app_settings)
    tracker = services["usage_tracker"]
    await tracker.start()
    try:
        return await _HANDLERS[args.command](args, services)
    finally:
        await tracker.stop()


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the ingestion CLI."""
    parser = argparse.ArgumentParser(
        prog="python -m docrag.cli.ingest",
        description="Manage docrag owner chunk sets.",
    )
    parser.add_argument("--config", default="config/config.yaml", help="YAML config path")
    subparsers = parser.add_subparsers(dest="command", help="Chunk commands")

    doc_parser = subparsers.add_parser("document", help="Ingest document file(s)")
    doc_parser.add_argument("files", nargs="+", help="Plain-text files to ingest")
    doc_parser.add_argument("--actor", required=True, help="Acting user id")
    doc_parser.add_argument("--owner", help="Owner id (default: file stem)")
    doc_parser.add_argument("--type", default="document", help="Source type label")
    doc_parser.add_argument("--chunk-size", type=int, help="Target chunk size in characters")
    doc_parser.add_argument("--chunk-overlap", type=int, help="Overlap in characters")
    doc_parser.add_argument("--no-metadata", action="store_true", help="Skip metadata extraction")
    doc_parser.add_argument(
        "--no-embed", action="store_true", help="Store chunks as embedding-pending"
    )
    doc_parser.add_argument(
        "--concurrency", type=int, default=4, help="Files ingested concurrently"
    )

    kb_parser = subparsers.add_parser("knowledge", help="Append a knowledge item to a bot")
    kb_parser.add_argument("--owner", required=True, help="Bot id")
    kb_parser.add_argument("--actor", required=True, help="Acting user id")
    kb_parser.add_argument("--title", required=True, help="Knowledge item title")
    kb_parser.add_argument("--file", help="Path to the item text")
    kb_parser.add_argument("--text", help="Inline item text")
    kb_parser.add_argument("--type", default="knowledge", help="Source type label")

    search_parser = subparsers.add_parser("search", help="Similarity search for an owner")
    search_parser.add_argument("--owner", required=True, help="Owner id")
    search_parser.add_argument("query", help="Query text")
    search_parser.add_argument("--top-k", type=int, help="Maximum results")
    search_parser.add_argument("--min-similarity", type=float, help="Similarity threshold")
    search_parser.add_argument("--max-tokens", type=int, help="Trim results to a token budget")
    search_parser.add_argument(
        "--mode",
        choices=["vector", "keyword", "hybrid"],
        default="vector",
        help="Matching strategy (default: vector)",
    )

    delete_parser = subparsers.add_parser("delete", help="Delete all chunks of an owner")
    delete_parser.add_argument("--owner", required=True, help="Owner id")
    delete_parser.add_argument("--yes", action="store_true", help="Skip confirmation")

    backfill_parser = subparsers.add_parser("backfill", help="Embed pending chunks")
    backfill_parser.add_argument("--owner", required=True, help="Owner id")

    stats_parser = subparsers.add_parser("stats", help="Show owner statistics")
    stats_parser.add_argument("--owner", required=True, help="Owner id")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point: parse arguments, load settings, and dispatch."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    app_settings = load_settings(args.config)

    from docrag.utils.logging import configure_logging

    configure_logging(app_settings.log_level)

    exit_code = asyncio.run(_run(args, app_settings))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
