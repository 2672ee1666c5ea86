"""
Crate Indexer - computes and stores embeddings for crate descriptions.

Indexing process:
1. Find crates whose embedding is absent
2. Build the embedding text from crate id and description
3. Generate embeddings through the Embedding Service, batch by batch
4. Write each vector back to the store
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ..config import Settings
from ..exceptions import CrateSearchError, PartialBatchFailure, ProviderError
from .embedder import EmbeddingService
from .models import embedding_text
from .store import CrateStore

logger = logging.getLogger(__name__)


@dataclass
class IndexingReport:
    """Summary of a bulk indexing run."""

    total: int = 0
    indexed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def failed_ids(self) -> List[str]:
        return sorted(self.failed)

    def raise_for_failures(self) -> None:
        """
        Raises:
            PartialBatchFailure: If at least one crate failed.
        """
        if self.failed:
            raise PartialBatchFailure(self.failed)


class CrateIndexer:
    def __init__(
        self,
        store: CrateStore,
        embedder: EmbeddingService,
        batch_size: Optional[int] = None,
        concurrency: int = 4,
    ):
        self.store = store
        self.embedder = embedder
        self.batch_size = max(1, batch_size or embedder.batch_size)
        self.concurrency = max(1, concurrency)

    @classmethod
    def from_settings(cls, store: CrateStore, embedder: EmbeddingService, settings: Settings) -> "CrateIndexer":
        return cls(
            store,
            embedder,
            batch_size=settings.embedding_batch_size,
            concurrency=settings.embedding_concurrency,
        )

    async def update_crate_embedding(self, crate_id: str) -> List[float]:
        """
        Re-embed one crate from its current description.

        Raises:
            NotFound: If the crate does not exist
            ProviderError: If the embedding call fails
            StoreError: If reading or writing the row fails
        """
        description = await self.store.get_description(crate_id)
        vector = await self.embedder.embed(embedding_text(crate_id, description))
        await self.store.set_embedding(crate_id, vector)
        logger.info(f"✅ Embedding updated for crate '{crate_id}'")
        return vector

    async def update_all_missing_embeddings(self) -> IndexingReport:
        """
        Embed every crate whose embedding is absent.

        Batches run concurrently up to `concurrency`. A failing crate is recorded
        in the report and the run continues; already indexed crates are never
        touched, so a repeated run is a no-op.

        Returns:
            IndexingReport with indexed ids and failed ids with reasons
        """
        missing = await self.store.list_ids_missing_embedding()
        report = IndexingReport(total=len(missing))

        logger.info(f"🚀 Found {len(missing)} crate(s) without embeddings")
        if not missing:
            return report

        semaphore = asyncio.Semaphore(self.concurrency)
        batches = [missing[i:i + self.batch_size] for i in range(0, len(missing), self.batch_size)]

        async def _run(batch_num: int, batch: List[str]) -> None:
            async with semaphore:
                await self._index_batch(batch_num, len(batches), batch, report)

        await asyncio.gather(*(_run(n, batch) for n, batch in enumerate(batches, 1)))

        if report.failed:
            logger.warning(
                f"⚠️ Indexing completed with errors: {len(report.failed)} failed, "
                f"{len(report.indexed)}/{report.total} indexed. Failed: {report.failed_ids}"
            )
        else:
            logger.info(f"✅ Indexing completed: {len(report.indexed)}/{report.total} crates indexed")
        return report

    async def _index_batch(self, batch_num: int, total_batches: int, crate_ids: Sequence[str],
                           report: IndexingReport) -> None:
        try:
            descriptions = await self.store.get_descriptions(crate_ids)
        except CrateSearchError as e:
            logger.error(f"❌ Batch {batch_num}/{total_batches}: could not load descriptions: {e}")
            for crate_id in crate_ids:
                report.failed[crate_id] = str(e)
            return

        present = []
        for crate_id in crate_ids:
            if crate_id in descriptions:
                present.append(crate_id)
            else:
                # Deleted between listing and loading
                report.failed[crate_id] = f"Crate '{crate_id}' not found"

        texts = [embedding_text(crate_id, descriptions[crate_id]) for crate_id in present]
        try:
            vectors = await self.embedder.embed_all(texts)
        except ProviderError as e:
            logger.warning(
                f"⚠️ Batch {batch_num}/{total_batches} failed ({e}), retrying {len(present)} crate(s) one by one"
            )
            for crate_id, text in zip(present, texts):
                await self._index_one(crate_id, text, report)
            return

        for crate_id, vector in zip(present, vectors):
            await self._store_one(crate_id, vector, report)

        logger.info(f"📦 Batch {batch_num}/{total_batches} processed: {len(present)} crate(s)")

    async def _index_one(self, crate_id: str, text: str, report: IndexingReport) -> None:
        try:
            vector = await self.embedder.embed(text)
        except ProviderError as e:
            logger.error(f"❌ Could not embed crate '{crate_id}': {e}")
            report.failed[crate_id] = str(e)
            return
        await self._store_one(crate_id, vector, report)

    async def _store_one(self, crate_id: str, vector: List[float], report: IndexingReport) -> None:
        try:
            await self.store.set_embedding(crate_id, vector)
        except (CrateSearchError, ValueError) as e:
            logger.error(f"❌ Could not store embedding for crate '{crate_id}': {e}")
            report.failed[crate_id] = str(e)
            return
        report.indexed.append(crate_id)

    async def reset_embeddings(self, crate_id: Optional[str] = None) -> int:
        """
        Clear stored embeddings so they get recomputed (e.g. after changing the embedding model).

        Args:
            crate_id: Only this crate; all crates when None

        Returns:
            Number of cleared rows
        """
        return await self.store.clear_embeddings(crate_id)
