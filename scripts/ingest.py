#!/usr/bin/env python
"""Ingest files into the knowledge base from the command line.

Usage:
    python scripts/ingest.py notes.txt manual.pdf     # Ingest files
    python scripts/ingest.py --rebuild                # Re-embed all stored chunks
    python scripts/ingest.py --api-key sk-... a.txt   # Save a key, then ingest
"""
import argparse
import asyncio
import os
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from wali import config
from wali.app_state import AppState
from wali.errors import WaliError
import structlog

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

    def update(self, current: int, total: int, file_path: Path, detail: str):
        percentage = (current / total) * 100 if total > 0 else 0
        print(f"  [{current}/{total}] {percentage:5.1f}%  {file_path.name[:30]:<30} {detail}")

    def detail(self, message: str):
        """Extra line shown only with --verbose."""
        if self.verbose:
            print(f"           {message}")

    def finish(self, stats: dict):
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"\n{'=' * 60}")
        print("  Ingestion Complete")
        print(f"{'=' * 60}\n")
        print(f"  Files ingested:   {stats['files_processed']}")
        print(f"  Files failed:     {stats['files_failed']}")
        print(f"  Chunks created:   {stats['chunks_created']}")
        print(f"  Time elapsed:     {elapsed_seconds:.1f}s")

        if stats["chunks_created"] > 0 and elapsed_seconds > 0:
            rate = stats["chunks_created"] / elapsed_seconds
            print(f"  Indexing rate:    {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        if stats["files_failed"] > 0:
            print(f"Warning: {stats['files_failed']} file(s) failed to ingest. Check logs for details.\n")


async def ingest_files(state: AppState, files: list, progress: ProgressReporter) -> dict:
    """Ingest each file, continuing past per-file failures."""
    stats = {"files_processed": 0, "files_failed": 0, "chunks_created": 0}

    for idx, file_path in enumerate(files, 1):
        try:
            result = await state.upload_document_from_path(file_path)
        except WaliError as e:
            stats["files_failed"] += 1
            logger.error(
                "file_ingestion_failed",
                path=str(file_path),
                error=str(e),
                error_type=type(e).__name__,
            )
            progress.update(idx, len(files), file_path, f"FAILED: {e}")
            progress.detail(f"error_type={type(e).__name__}")
            continue

        stats["files_processed"] += 1
        stats["chunks_created"] += result.chunk_count
        progress.update(idx, len(files), file_path, f"{result.chunk_count} chunks")
        progress.detail(f"document_id={result.document_id}")

    return stats


async def main():
    """Main entry point for the ingest script."""
    parser = argparse.ArgumentParser(
        description="Ingest documents into the knowledge base",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("files", nargs="*", type=Path, help="Text or PDF files to ingest")
    parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Re-embed every stored chunk and replace the vector index",
    )
    parser.add_argument(
        "--api-key",
        default=os.getenv("DASHSCOPE_API_KEY"),
        help="API key to save before ingesting (default: $DASHSCOPE_API_KEY)",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help=f"Data directory (default: {config.DATA_DIR})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show verbose output")

    args = parser.parse_args()

    if not args.files and not args.rebuild:
        parser.error("nothing to do: pass files to ingest or --rebuild")

    config.configure_logging()
    progress = ProgressReporter(verbose=args.verbose)

    try:
        state = AppState.create(args.data_dir)
        if args.api_key:
            state.set_api_key(args.api_key)

        print("\nConfiguration:")
        print(f"   Embedding model:  {state.registry.config.embedding_model}")
        print(f"   Chunk size:       {state.registry.config.chunk_size} chars")
        print(f"   Chunk overlap:    {state.registry.config.chunk_overlap} chars")
        print(f"   Vectors loaded:   {len(state.vector_store)}")

        if args.rebuild:
            progress.start("Rebuilding Vector Index")
            count = await state.rebuild_index()
            print(f"  Rebuilt index with {count} vectors\n")

        if args.files:
            progress.start(f"Ingesting {len(args.files)} File(s)")
            stats = await ingest_files(state, args.files, progress)
            progress.finish(stats)
            if stats["files_failed"] > 0:
                sys.exit(1)

    except KeyboardInterrupt:
        print("\n\nIngestion cancelled by user.\n")
        sys.exit(1)

    except WaliError as e:
        print(f"\nError: {e}\n")
        logger.error("ingest_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
