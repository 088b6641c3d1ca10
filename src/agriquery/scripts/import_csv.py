"""CLI for importing a KCC CSV export and optionally embedding it."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from agriquery.config import Settings
from agriquery.embedding_jobs import ConfigurationError, EmbeddingJobRunner, RunConfig
from agriquery.embeddings import EmbeddingClient
from agriquery.ingestion import CsvIngestor, IngestionOptions
from agriquery.store import DocumentStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import a Kisan Call Centre CSV export into AgriQuery")
    parser.add_argument("path", help="Path to the CSV file")
    parser.add_argument("--clear", action="store_true", help="Delete existing documents before importing")
    parser.add_argument("--batch-size", type=int, default=None, help="Rows per insert batch")
    parser.add_argument("--embed", action="store_true", help="Generate embeddings after the import")
    parser.add_argument(
        "--skip-existing",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Skip documents that already have embeddings (default: on)",
    )
    return parser


async def _embed_all(runner: EmbeddingJobRunner) -> dict:
    return await runner.start()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    csv_path = Path(args.path)
    if not csv_path.is_file():  # pragma: no cover - CLI validation
        parser.error(f"CSV file '{args.path}' does not exist")
        return 1

    settings = Settings.from_env()
    batch_size = args.batch_size if args.batch_size is not None else settings.csv_batch_size
    if batch_size < 1:  # pragma: no cover - CLI validation
        parser.error("--batch-size must be a positive integer")
        return 1

    embedding_client = EmbeddingClient.from_settings(settings)
    embedding_client.service.ensure_ready()
    store = DocumentStore.from_settings(settings, vector_size=embedding_client.dimension)
    store.ensure_collection()
    store.ensure_payload_indexes()

    ingestor = CsvIngestor(store)
    options = IngestionOptions(clear_existing=args.clear, generate_embeddings=args.embed, batch_size=batch_size)

    def report(processed: int, inserted: int, failed: int) -> None:
        print(f"  processed {processed} rows ({inserted} inserted, {failed} failed)")

    summary = ingestor.ingest_file(csv_path, options, progress=report)
    print(
        f"Imported {summary.inserted_records} of {summary.total_records} rows from {csv_path.name}"
        f" in {summary.duration_seconds:.1f}s ({summary.failed_records} failed)"
    )

    if not args.embed:
        return 0

    runner = EmbeddingJobRunner(
        store,
        embedding_client,
        config=RunConfig.from_settings(settings),
    )
    try:
        runner.configure({"skip_existing": args.skip_existing})
    except ConfigurationError as exc:  # pragma: no cover - CLI validation
        parser.error(str(exc))
        return 1

    status = asyncio.run(_embed_all(runner))
    print(
        f"Embedding run {status['phase']}: {status['success_count']} embedded, "
        f"{status['failed_count']} failed in {status['elapsed_time_formatted']}"
    )
    return 0 if status["phase"] == "completed" else 1


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
