"""
Crate Metadata Store - narrow async interface over the crates table.

All methods are coroutines; the synchronous SQLAlchemy work runs in a worker
thread so callers can await (and time-bound) every store call.
"""

import re
import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings
from ..exceptions import NotFound, StoreError
from .database import create_crate_engine, create_session_factory
from .models import CrateRecord, KeywordMatch, build_crates_table

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Terms handed to to_tsquery are limited to word characters
_UNSAFE_TERM_CHARS = re.compile(r"[^\w\s]+", re.UNICODE)
MAX_KEYWORD_TERMS = 6


def normalize_terms(terms: Iterable[str]) -> List[List[str]]:
    """
    Split keyword terms into lower-cased words, dropping empties.

    "HTTP client, json" arrives as ["HTTP client", " json"] and becomes
    [["http", "client"], ["json"]]. At most MAX_KEYWORD_TERMS terms are kept.
    """
    normalized = []
    for term in terms:
        words = _UNSAFE_TERM_CHARS.sub(" ", term.lower()).split()
        if words:
            normalized.append(words)
        if len(normalized) == MAX_KEYWORD_TERMS:
            break
    return normalized


def to_tsquery(terms: List[List[str]]) -> str:
    """[["http", "client"], ["json"]] -> "http & client:* | json:*" (prefix match on the last word)."""
    return " | ".join(f"{' & '.join(words)}:*" for words in terms)


class CrateStore:
    """
    Access to the crates table.

    Exposes get/update/list operations only; table creation belongs to
    `database.init_db`. Every SQLAlchemy failure surfaces as StoreError.
    """

    def __init__(self, engine: Engine, table_name: str = "crates", dimensions: int = 1536):
        self.engine = engine
        self.dimensions = dimensions
        self.table = build_crates_table(table_name, dimensions)
        self._session_factory = create_session_factory(engine)

    @classmethod
    def from_settings(cls, settings: Settings, engine: Optional[Engine] = None) -> "CrateStore":
        return cls(
            engine or create_crate_engine(settings.database_url),
            table_name=settings.table_name,
            dimensions=settings.embedding_dimensions,
        )

    async def _run(self, operation: str, fn: Callable[[Session], T]) -> T:
        def _call() -> T:
            with self._session_factory() as db:
                try:
                    result = fn(db)
                    db.commit()
                    return result
                except Exception:
                    db.rollback()
                    raise

        try:
            return await asyncio.to_thread(_call)
        except SQLAlchemyError as e:
            logger.error(f"❌ Store error during {operation}: {e}")
            raise StoreError(f"{operation} failed: {e}") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_crate(self, crate_id: str) -> CrateRecord:
        """
        Load one crate row.

        Raises:
            NotFound: If no row has this id.
        """
        t = self.table

        def _get(db: Session) -> Optional[CrateRecord]:
            row = db.execute(
                select(t.c.id, t.c.description, t.c.downloads, t.c.embedding).where(t.c.id == crate_id)
            ).first()
            if row is None:
                return None
            return CrateRecord(row.id, row.description or "", row.downloads or 0, row.embedding)

        record = await self._run("get_crate", _get)
        if record is None:
            raise NotFound(crate_id)
        return record

    async def get_description(self, crate_id: str) -> str:
        """
        Raises:
            NotFound: If no row has this id.
        """
        t = self.table

        def _get(db: Session) -> Optional[str]:
            row = db.execute(select(t.c.description).where(t.c.id == crate_id)).first()
            if row is None:
                return None
            return row.description or ""

        description = await self._run("get_description", _get)
        if description is None:
            raise NotFound(crate_id)
        return description

    async def get_descriptions(self, crate_ids: Sequence[str]) -> Dict[str, str]:
        """Descriptions for the given ids; unknown ids are simply absent from the result."""
        if not crate_ids:
            return {}
        t = self.table

        def _get(db: Session) -> Dict[str, str]:
            rows = db.execute(select(t.c.id, t.c.description).where(t.c.id.in_(list(crate_ids))))
            return {row.id: row.description or "" for row in rows}

        return await self._run("get_descriptions", _get)

    async def get_embeddings(self, crate_ids: Sequence[str]) -> Dict[str, List[float]]:
        """Stored vectors for the given ids; ids without an embedding are absent."""
        if not crate_ids:
            return {}
        t = self.table

        def _get(db: Session) -> Dict[str, List[float]]:
            rows = db.execute(
                select(t.c.id, t.c.embedding).where(
                    t.c.id.in_(list(crate_ids)), t.c.embedding.is_not(None)
                )
            )
            return {row.id: row.embedding for row in rows}

        return await self._run("get_embeddings", _get)

    async def list_ids_missing_embedding(self) -> List[str]:
        t = self.table

        def _list(db: Session) -> List[str]:
            rows = db.execute(select(t.c.id).where(t.c.embedding.is_(None)).order_by(t.c.id))
            return [row.id for row in rows]

        return await self._run("list_ids_missing_embedding", _list)

    async def list_all_embeddings(self) -> List[Tuple[str, List[float]]]:
        """(id, vector) for every indexed crate, ordered by id."""
        t = self.table

        def _list(db: Session) -> List[Tuple[str, List[float]]]:
            rows = db.execute(
                select(t.c.id, t.c.embedding).where(t.c.embedding.is_not(None)).order_by(t.c.id)
            )
            return [(row.id, row.embedding) for row in rows]

        return await self._run("list_all_embeddings", _list)

    async def search_keywords(self, terms: Iterable[str], limit: int = 200) -> List[KeywordMatch]:
        """
        Keyword search over crate id and description.

        PostgreSQL uses full-text search (`to_tsquery` prefix match ranked by
        `ts_rank`). Other databases fall back to case-insensitive LIKE matching
        ranked by the share of matched terms.

        Args:
            terms: Keyword terms; a multi-word term matches only when all its words match
            limit: Maximum number of rows

        Returns:
            Matches ordered by rank (desc), then id
        """
        normalized = normalize_terms(terms)
        if not normalized:
            return []

        if self.engine.dialect.name == "postgresql":
            return await self._run("search_keywords", lambda db: self._fulltext(db, normalized, limit))
        return await self._run("search_keywords", lambda db: self._like(db, normalized, limit))

    def _fulltext(self, db: Session, terms: List[List[str]], limit: int) -> List[KeywordMatch]:
        t = self.table
        document = func.to_tsvector(
            "english", t.c.id + " " + func.coalesce(t.c.description, "")
        )
        query = func.to_tsquery("english", to_tsquery(terms))
        rank = func.ts_rank(document, query).label("rank")

        rows = db.execute(
            select(t.c.id, t.c.description, t.c.downloads, rank)
            .where(document.op("@@")(query))
            .order_by(rank.desc(), t.c.id)
            .limit(limit)
        )
        return [
            KeywordMatch(row.id, row.description or "", row.downloads or 0, float(row.rank or 0.0))
            for row in rows
        ]

    def _like(self, db: Session, terms: List[List[str]], limit: int) -> List[KeywordMatch]:
        t = self.table
        words = sorted({word for term in terms for word in term})
        conditions = []
        for word in words:
            pattern = f"%{word}%"
            conditions.append(func.lower(t.c.id).like(pattern))
            conditions.append(func.lower(t.c.description).like(pattern))

        rows = db.execute(select(t.c.id, t.c.description, t.c.downloads).where(or_(*conditions)))

        matches = []
        for row in rows:
            haystack = f"{row.id} {row.description or ''}".lower()
            matched = sum(1 for term in terms if all(word in haystack for word in term))
            if matched:
                matches.append(
                    KeywordMatch(row.id, row.description or "", row.downloads or 0, matched / len(terms))
                )

        matches.sort(key=lambda m: (-m.rank, m.crate_id))
        return matches[:limit]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set_embedding(self, crate_id: str, vector: Sequence[float]) -> None:
        """
        Store the embedding of one crate (last write wins).

        Raises:
            ValueError: If the vector does not have the configured dimension.
            NotFound: If no row has this id.
        """
        if len(vector) != self.dimensions:
            raise ValueError(
                f"Embedding for '{crate_id}' has {len(vector)} dimensions, expected {self.dimensions}"
            )
        t = self.table
        values = [float(x) for x in vector]

        def _set(db: Session) -> int:
            result = db.execute(update(t).where(t.c.id == crate_id).values(embedding=values))
            return result.rowcount

        if not await self._run("set_embedding", _set):
            raise NotFound(crate_id)

    async def clear_embeddings(self, crate_id: Optional[str] = None) -> int:
        """
        Reset embeddings to NULL for one crate or, without an id, for every crate.

        Returns:
            Number of rows whose embedding was cleared
        """
        t = self.table
        stmt = update(t).where(t.c.embedding.is_not(None))
        if crate_id is not None:
            stmt = stmt.where(t.c.id == crate_id)

        cleared = await self._run("clear_embeddings", lambda db: db.execute(stmt.values(embedding=None)).rowcount)
        logger.info(f"🧹 Cleared {cleared} embedding(s)" + (f" for crate '{crate_id}'" if crate_id else ""))
        return cleared

    async def upsert_crate(self, crate_id: str, description: str, downloads: int = 0) -> None:
        """
        Insert a crate or update its description.

        A changed description invalidates the stored embedding.
        """
        t = self.table

        def _upsert(db: Session) -> None:
            row = db.execute(select(t.c.description).where(t.c.id == crate_id)).first()
            if row is None:
                db.execute(t.insert().values(id=crate_id, description=description, downloads=downloads))
                return
            values = {"description": description, "downloads": downloads}
            if (row.description or "") != description:
                values["embedding"] = None
            db.execute(update(t).where(t.c.id == crate_id).values(**values))

        await self._run("upsert_crate", _upsert)
