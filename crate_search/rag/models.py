"""
Table definition and record types for the crate store.

The crates table holds one row per crate:
    - id:          crate identifier (the crate name), primary key
    - description: descriptive text used for embedding and keyword search
    - downloads:   download counter, secondary sort key for keyword search
    - embedding:   vector of fixed dimension, NULL until the crate is indexed
"""

from dataclasses import dataclass
from typing import List, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger, Column, DateTime, JSON, MetaData, String, Table, Text,
)
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator


class EmbeddingVector(TypeDecorator):
    """
    Embedding column: pgvector `vector(D)` on PostgreSQL, JSON array elsewhere.

    Writes are validated against the configured dimension; reads always
    return a plain list of floats (or None for an unindexed row).
    """

    impl = JSON
    cache_ok = True

    def __init__(self, dimensions: int):
        super().__init__(none_as_null=True)
        self.dimensions = dimensions

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Vector(self.dimensions))
        return dialect.type_descriptor(JSON(none_as_null=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        vector = [float(x) for x in value]
        if len(vector) != self.dimensions:
            raise ValueError(
                f"expected {self.dimensions} dimensions, got {len(vector)}"
            )
        return vector

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return [float(x) for x in value]


def build_crates_table(
    table_name: str = "crates",
    dimensions: int = 1536,
    metadata: Optional[MetaData] = None,
) -> Table:
    """Build the crates table bound to a (new) MetaData."""
    return Table(
        table_name,
        metadata if metadata is not None else MetaData(),
        Column("id", String(255), primary_key=True),
        Column("description", Text, nullable=False, default=""),
        Column("downloads", BigInteger, nullable=False, default=0),
        Column("embedding", EmbeddingVector(dimensions), nullable=True),
        Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    )


@dataclass(frozen=True)
class CrateRecord:
    id: str
    description: str
    downloads: int = 0
    embedding: Optional[List[float]] = None

    @property
    def is_indexed(self) -> bool:
        return self.embedding is not None


@dataclass(frozen=True)
class KeywordMatch:
    """Row returned by keyword search, `rank` is the keyword relevance score."""

    crate_id: str
    description: str
    downloads: int
    rank: float


def embedding_text(crate_id: str, description: Optional[str]) -> str:
    """Text that represents a crate for embedding: the name weighs in with the description."""
    description = (description or "").strip()
    if not description:
        return crate_id
    return f"{crate_id} : {description}"
