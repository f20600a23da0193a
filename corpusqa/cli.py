"""Command-line interface for corpusqa.

Usage:
    corpusqa create notes
    corpusqa ingest notes --path ./docs
    corpusqa build notes
    corpusqa ask notes "What does the design say about snapshots?"
    corpusqa serve --port 8090
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import structlog

from corpusqa.config import Settings
from corpusqa.errors import CorpusQAError, IndexNotAvailableError
from corpusqa.logging_setup import configure_logging
from corpusqa.service import CorpusService

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, file_path: str):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        file_name = Path(file_path).name
        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {file_name[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, title: str, stats: dict):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print(f"  {title}")
        print(f"{'=' * 60}\n")
        for key, value in stats.items():
            label = key.replace("_", " ").capitalize() + ":"
            print(f"  {label:<24}{value}")
        print(f"  {'Time elapsed:':<24}{elapsed_seconds:.1f}s")
        print(f"\n{'=' * 60}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="corpusqa",
        description="Build and query small retrieval-augmented generation indices",
    )
    parser.add_argument("--data-dir", type=Path, default=None, help="Data directory")
    parser.add_argument("--ollama-url", default=None, help="Ollama base URL")
    parser.add_argument("--embedding-model", default=None, help="Embedding model name")
    parser.add_argument("--chat-model", default=None, help="Default generation model name")
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use deterministic offline backends instead of Ollama",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")

    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8090)
    serve.add_argument(
        "--ingest-root",
        type=Path,
        default=None,
        help="Only allow HTTP ingest from this directory tree",
    )

    sub.add_parser("models", help="List models")

    create = sub.add_parser("create", help="Create a model")
    create.add_argument("model")

    ingest = sub.add_parser("ingest", help="Extract sources into a model")
    ingest.add_argument("model")
    ingest.add_argument("--path", type=Path, required=True, help="File or directory to ingest")
    ingest.add_argument("--verbose", "-v", action="store_true")

    build = sub.add_parser("build", help="Chunk, embed and index a model's sources")
    build.add_argument("model")
    build.add_argument("--verbose", "-v", action="store_true")

    search = sub.add_parser("search", help="Show the chunks most similar to a query")
    search.add_argument("model")
    search.add_argument("query")
    search.add_argument("--top-k", type=int, default=None)

    ask = sub.add_parser("ask", help="Answer a question from a model's index")
    ask.add_argument("model")
    ask.add_argument("query", nargs="?", help="Question (omit for an interactive session)")
    ask.add_argument("--top-k", type=int, default=None)
    ask.add_argument("--generate-model", default=None, help="Generation model for this session")
    ask.add_argument("--show-prompt", action="store_true")

    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings.from_env().with_overrides(
        data_dir=args.data_dir,
        ollama_base_url=args.ollama_url,
        embedding_model=args.embedding_model,
        chat_model=args.chat_model,
        log_level=args.log_level,
        ingest_root=getattr(args, "ingest_root", None),
    )


def cmd_models(service: CorpusService, args: argparse.Namespace) -> int:
    models = service.list_models()
    if not models:
        print("(no models)")
        return 0
    for m in models:
        print(f"{m.name}\tchunks={m.chunk_count}\tembeddings={m.embedding_count}\tupdated={m.updated_at}")
    return 0


def cmd_create(service: CorpusService, args: argparse.Namespace) -> int:
    meta = service.create_model(args.model)
    print(f"✅ Created model: {meta.name}")
    return 0


def cmd_ingest(service: CorpusService, args: argparse.Namespace) -> int:
    progress = ProgressReporter(verbose=args.verbose)
    progress.start(f"Ingesting sources into {args.model}")
    stats = service.ingest(args.model, args.path, progress_callback=progress.update)
    progress.finish("Ingest Complete!", stats)
    if stats["sources_failed"] > 0:
        print(f"⚠️  Warning: {stats['sources_failed']} source(s) were skipped. Check logs for details.\n")
    return 0


async def cmd_build(service: CorpusService, args: argparse.Namespace) -> int:
    progress = ProgressReporter(verbose=args.verbose)
    progress.start(f"Building index for {args.model}")
    stats = await service.build(args.model, progress_callback=progress.update)
    progress.finish("Indexing Complete!", stats)
    print(f"✅ Index ready at: {service.store.index_path(args.model)}\n")
    return 1 if stats["sources_failed"] > 0 else 0


async def cmd_search(service: CorpusService, args: argparse.Namespace) -> int:
    results = await service.search(args.model, args.query, top_k=args.top_k)
    if not results:
        print("(no results)")
    for rank, r in enumerate(results, 1):
        source = r.record.metadata.get("source_path", r.record.source)
        print(f"[{rank}] score={r.score:.4f} {source}#{r.record.index}")
        print(f"    {r.record.text[:200]}")
    return 0


async def _ask_once(service: CorpusService, args: argparse.Namespace, query: str) -> None:
    result = await service.ask(
        args.model, query, top_k=args.top_k, generation_model=args.generate_model
    )
    if args.show_prompt:
        print(result.prompt)
    print(result.answer)
    if result.retrieved:
        print("\nSources:")
        for rank, r in enumerate(result.retrieved, 1):
            source = r.record.metadata.get("source_path", r.record.source)
            print(f"  [{rank}] {source} (score={r.score:.4f})")


async def cmd_ask(service: CorpusService, args: argparse.Namespace) -> int:
    if args.query:
        await _ask_once(service, args, args.query)
        return 0

    # Load once up front so a missing index is reported before the prompt
    service.retriever(args.model)
    print(f"Chatting with {args.model}. Empty line or Ctrl-D to exit.")
    while True:
        try:
            query = input("> ").strip()
        except EOFError:
            print()
            return 0
        if not query:
            return 0
        await _ask_once(service, args, query)


def cmd_serve(service: CorpusService, args: argparse.Namespace) -> int:
    from corpusqa.main import create_app

    app = create_app(service)
    logger.info("http_server_starting", host=args.host, port=args.port)
    app.run(host=args.host, port=args.port)
    return 0


async def dispatch(service: CorpusService, args: argparse.Namespace) -> int:
    handlers = {
        "models": cmd_models,
        "create": cmd_create,
        "ingest": cmd_ingest,
        "build": cmd_build,
        "search": cmd_search,
        "ask": cmd_ask,
    }
    result = handlers[args.command](service, args)
    if asyncio.iscoroutine(result):
        result = await result
    return result


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the corpusqa command."""
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)
    configure_logging(settings.log_level)

    try:
        service = CorpusService(settings, mock=args.mock)
        if args.command == "serve":
            return cmd_serve(service, args)
        return asyncio.run(dispatch(service, args))

    except KeyboardInterrupt:
        print("\n\n⚠️  Cancelled by user.\n")
        return 1

    except IndexNotAvailableError as e:
        print(f"\n❌ Error: {e}\n   Run 'corpusqa build {getattr(args, 'model', '')}' first.\n")
        return 1

    except CorpusQAError as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("cli_command_failed", command=args.command, error=str(e), error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(main())
