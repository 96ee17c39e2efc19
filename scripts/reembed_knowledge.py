#!/usr/bin/env python3
"""Load knowledge documents and (re)build their embedded chunks.

This script optionally loads markdown/PDF documents from a directory into
the knowledge store, then re-chunks and re-embeds one document, the whole
corpus, or only documents that have no chunks yet.

Usage:
    python scripts/reembed_knowledge.py --documents ./knowledge all
    python scripts/reembed_knowledge.py protein_timing
    python scripts/reembed_knowledge.py --missing

Environment variables:
    DATABASE_URL: Knowledge store database
    EMBEDDING_PROVIDER: "openai" (default) or "google"
    OPENAI_API_KEY / GOOGLE_AI_API_KEY: Key for the chosen provider
"""

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv

project_dir = Path(__file__).parent.parent

# Load environment variables from .env file
env_path = project_dir / ".env"
if env_path.exists():
    load_dotenv(env_path)
    print(f"Loaded environment from: {env_path}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Re-embed knowledge documents")
    parser.add_argument(
        "target",
        nargs="?",
        default="all",
        help="Document id to re-embed, or 'all' (default)",
    )
    parser.add_argument(
        "--documents",
        type=Path,
        help="Directory of markdown/PDF documents to load before embedding",
    )
    parser.add_argument(
        "--owner-tag",
        help="Owner tag for loaded documents (defaults to each file's parent directory)",
    )
    parser.add_argument(
        "--missing",
        action="store_true",
        help="Only embed documents that have no chunks",
    )
    return parser.parse_args()


async def main() -> int:
    """Load documents and run the re-embedding job."""
    from coach_context.core.config import get_settings
    from coach_context.core.database import get_engine, get_session_factory, init_models
    from coach_context.core.exceptions import StoreWriteFailed
    from coach_context.knowledge.loader import load_documents
    from coach_context.observability import configure_logging, drain_observers
    from coach_context.services.context_services import build_services

    args = parse_args()
    settings = get_settings()
    configure_logging(settings.log_level)

    engine = get_engine()
    await init_models(engine)
    services = build_services(get_session_factory(), settings)

    if args.documents is not None:
        print(f"Loading documents from: {args.documents}")
        documents = load_documents(args.documents, owner_tag=args.owner_tag)
        if not documents:
            print("No documents found.")
            return 1
        for document in documents:
            await services.store.upsert_document(document)
        print(f"Loaded {len(documents)} documents")

        owners: dict[str, int] = {}
        for document in documents:
            owners[document.owner_tag] = owners.get(document.owner_tag, 0) + 1
        print("\nDocuments per owner:")
        for owner, count in sorted(owners.items()):
            print(f"  {owner}: {count}")

    print(f"\nEmbedding with {services.embedder.provider.name} ({services.embedder.model})...")

    exit_code = 0
    try:
        if args.missing:
            summary = await services.reembedder.backfill_missing()
        else:
            summary = await services.reembedder.reembed(args.target)
    except LookupError as e:
        print(f"Error: {e}")
        return 1
    except StoreWriteFailed as e:
        print(f"Error: {e}")
        summary = e.summary
        exit_code = 1
    finally:
        await drain_observers()
        await engine.dispose()

    if summary is not None:
        print(f"\nProcessed: {summary.processed}/{summary.total} ({summary.percentage}%)")
        print(f"Failed: {summary.failed}")
        print(f"Chunks written: {summary.chunks_written}")
        for failure in summary.failures:
            where = failure.document_id
            if failure.chunk_index is not None:
                where = f"{where}#{failure.chunk_index}"
            print(f"  [{failure.stage}] {where}: {failure.error}")
        if summary.failed:
            exit_code = 1

    return exit_code


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
