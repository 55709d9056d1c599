from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from core.logging_config import get_logger

logger = get_logger(__name__)

Base = declarative_base()


class Database:
    """Connection handle owned by the process entry point.

    `init()` creates the engine and tables, `dispose()` releases the pool.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self.engine: Optional[Engine] = None
        self._sessionmaker: Optional[sessionmaker] = None

    def init(self) -> "Database":
        if self.engine is not None:
            return self

        if self.url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in self.url or self.url.rstrip("/") == "sqlite:":
                # one shared connection so every session sees the same in-memory db
                kwargs["poolclass"] = StaticPool
        else:
            # Connection pooling for server databases
            kwargs = {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_timeout": 30,
                "pool_recycle": 3600,
                "pool_pre_ping": True,
            }

        self.engine = create_engine(self.url, **kwargs)
        self._sessionmaker = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)

        # models register themselves on Base
        from db import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        logger.info("Database initialised", extra={"dialect": self.engine.dialect.name})
        return self

    def dispose(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            logger.info("Database connections released")
        self.engine = None
        self._sessionmaker = None

    def session(self) -> Session:
        if self._sessionmaker is None:
            raise RuntimeError("Database.init() must be called before opening sessions")
        return self._sessionmaker()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session scoped to one transaction: commit on success, rollback on error."""
        db = self.session()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
