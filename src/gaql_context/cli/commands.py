"""
CLI commands - cache maintenance and ad-hoc retrieval.

Each command follows the same pattern:
1. Parse arguments
2. Load environment and configuration
3. Build the RetrievalService
4. Print results
5. Return exit code
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from dotenv import load_dotenv

from gaql_context.config import get_config
from gaql_context.core.errors import RetrievalError
from gaql_context.observability import init_tracing, shutdown_tracing
from gaql_context.retrieval.service import RetrievalService


def _load_env() -> None:
    """Load environment variables from .env file."""
    load_dotenv()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_service() -> RetrievalService:
    return RetrievalService.from_config(get_config())


def _print_status(statuses) -> None:
    for name, status in statuses.items():
        built = f"{status.created_at:%Y-%m-%d %H:%M:%S}" if status.created_at else "never"
        print(f"{name}")
        print(f"  state:     {status.state.value}")
        print(f"  documents: {status.document_count if status.document_count is not None else '-'}"
              f" cached / {status.live_document_count} live")
        print(f"  built:     {built}")
        print(f"  model:     {status.model_id or '-'}")
        if status.reason is not None:
            print(f"  rebuild:   {status.reason.value}" + (f" ({status.detail})" if status.detail else ""))


def run_status_cli(argv: list[str] | None = None) -> int:
    """Show cache state per collection without rebuilding anything."""
    parser = argparse.ArgumentParser(prog="gaql-context status", description="Show cache status")
    parser.add_argument("collection", nargs="?", help="Collection name (default: all)")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    args = parser.parse_args(argv)

    service = _build_service()
    try:
        statuses = service.status(args.collection)
    except RetrievalError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({name: s.to_dict() for name, s in statuses.items()}, indent=2))
    elif not statuses:
        print("No collections configured (set GAQL_CONTEXT_COOKBOOK_PATH / GAQL_CONTEXT_FIELD_CACHE_PATH)")
    else:
        _print_status(statuses)
    return 0


def run_clear_cli(argv: list[str] | None = None) -> int:
    """Delete cached snapshots so the next use rebuilds."""
    parser = argparse.ArgumentParser(prog="gaql-context clear", description="Clear cached embeddings")
    parser.add_argument("collection", help="Collection name, or 'all'")
    args = parser.parse_args(argv)

    service = _build_service()
    names = service.collections if args.collection == "all" else [args.collection]
    try:
        for name in names:
            removed = service.clear(name)
            print(f"{name}: {'cleared' if removed else 'nothing cached'}")
    except RetrievalError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def run_build_cli(argv: list[str] | None = None) -> int:
    """Load or rebuild every configured collection."""
    parser = argparse.ArgumentParser(prog="gaql-context build", description="Build or refresh all caches")
    parser.parse_args(argv)

    service = _build_service()
    try:
        statuses = service.warm_up()
    except RetrievalError as e:
        print(f"Build failed: {e}", file=sys.stderr)
        return 1
    _print_status(statuses)
    return 0


def run_retrieve_cli(argv: list[str] | None = None) -> int:
    """Run one retrieval and print the ranked documents."""
    parser = argparse.ArgumentParser(prog="gaql-context retrieve", description="Retrieve context documents")
    parser.add_argument("collection", help="query_cookbook or field_metadata")
    parser.add_argument("query", help="Natural-language query")
    parser.add_argument("-k", "--max-results", type=int, default=None, help="Number of results")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    args = parser.parse_args(argv)

    service = _build_service()
    try:
        results = service.retrieve(args.collection, args.query, args.max_results, strict=True)
    except RetrievalError as e:
        print(f"Retrieval failed: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
        return 0

    for rank, result in enumerate(results, start=1):
        print(f"{rank:>3}. [{result.score:.4f}] {result.id}")
        query = result.attributes.get("query")
        if query:
            for line in query.splitlines():
                print(f"       {line}")
    if not results:
        print("No results")
    return 0


def main(argv: list[str] | None = None) -> int:
    """
    Main CLI entry point with subcommands.

    Usage:
        gaql-context status [collection]
        gaql-context clear <collection|all>
        gaql-context build
        gaql-context retrieve <collection> <query> [-k N]
    """
    _load_env()

    parser = argparse.ArgumentParser(
        prog="gaql-context",
        description="Embedding cache and retrieval for GAQL generation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  status      Show cache state per collection (no rebuild)
  clear       Delete cached embeddings for a collection or all
  build       Load or rebuild every collection
  retrieve    Print the top documents for a query

Examples:
  gaql-context build
  gaql-context retrieve field_metadata "cost per click by device" -k 5
  gaql-context clear all
        """,
    )
    parser.add_argument(
        "command",
        choices=["status", "clear", "build", "retrieve"],
        help="Command to run",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args, remaining = parser.parse_known_args(argv)
    _configure_logging(args.verbose)

    commands = {
        "status": run_status_cli,
        "clear": run_clear_cli,
        "build": run_build_cli,
        "retrieve": run_retrieve_cli,
    }

    init_tracing()
    try:
        return commands[args.command](remaining)
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130
    finally:
        shutdown_tracing()


if __name__ == "__main__":
    sys.exit(main())
