"""
Database configuration for the crate store.

Provides the SQLAlchemy engine, session factory and table preparation.
"""

import logging
from typing import Optional

from sqlalchemy import create_engine, text, Table
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)


def create_crate_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create the engine for the crate database.

    Pool options apply to server databases only:
    - pool_pre_ping=True - check the connection before use
    - pool_size=5 - connection pool size
    - max_overflow=10 - extra connections allowed above pool_size
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=echo,
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        echo=echo,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine, table: Optional[Table] = None) -> None:
    """
    Prepare the database: create the pgvector extension (PostgreSQL only) and the crates table.

    Setup helper for deployments and tests; the search core never issues DDL.
    """
    if engine.dialect.name == "postgresql":
        with engine.connect() as conn:
            try:
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
                conn.commit()
            except Exception as e:
                logger.warning(f"Could not create vector extension: {e}")
                conn.rollback()

    if table is not None:
        table.metadata.create_all(bind=engine, tables=[table])
        logger.info(f"✅ Table '{table.name}' is ready")
