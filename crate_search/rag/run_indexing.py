"""
Embedding indexing script.

Usage:
    python -m crate_search.rag.run_indexing              # embed all crates without embeddings
    python -m crate_search.rag.run_indexing --crate tokio
    python -m crate_search.rag.run_indexing --reset      # clear, then re-embed everything

Exits with status 1 when at least one crate failed.
"""

import sys
import asyncio
import logging
import argparse
from typing import List, Optional

from ..config import Settings
from ..exceptions import CrateSearchError
from ..provider_client import ProviderClient
from .database import create_crate_engine, init_db
from .embedder import EmbeddingService
from .indexer import CrateIndexer
from .store import CrateStore

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compute embeddings for crate descriptions")
    parser.add_argument("--crate", help="Re-embed only this crate id")
    parser.add_argument("--reset", action="store_true", help="Clear stored embeddings before indexing")
    parser.add_argument("--init-db", action="store_true", help="Create the crates table if it does not exist")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace, indexer: CrateIndexer) -> int:
    """Run one indexing job; returns the process exit code."""
    if args.reset:
        cleared = await indexer.reset_embeddings(args.crate)
        logger.info(f"🧹 Reset {cleared} embedding(s)")

    if args.crate:
        try:
            await indexer.update_crate_embedding(args.crate)
        except CrateSearchError as e:
            logger.error(f"❌ Indexing of crate '{args.crate}' failed: {e}")
            return 1
        logger.info(f"✅ Crate '{args.crate}' indexed")
        return 0

    logger.info("🚀 Indexing crates without embeddings...")
    report = await indexer.update_all_missing_embeddings()

    if report.success:
        logger.info(f"✅ Indexing completed successfully: {len(report.indexed)}/{report.total} crate(s)")
        return 0

    logger.error(f"❌ Indexing failed for {len(report.failed)} crate(s):")
    for crate_id in report.failed_ids:
        logger.error(f"   - {crate_id}: {report.failed[crate_id]}")
    return 1


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env()

    engine = create_crate_engine(settings.database_url)
    store = CrateStore.from_settings(settings, engine)
    if args.init_db:
        init_db(engine, store.table)

    provider = ProviderClient.from_settings(settings)
    try:
        embedder = EmbeddingService.from_settings(provider, settings)
        indexer = CrateIndexer.from_settings(store, embedder, settings)
        return await run(args, indexer)
    finally:
        await provider.close()
        engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    sys.exit(asyncio.run(main()))
