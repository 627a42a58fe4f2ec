"""Single-file database cache (SQLite via SQLAlchemy).

Simpler to version and share than a directory of files, but SQLite allows
one writer at a time: the runner funnels every write through the
coordinating process when this backend is used.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, ClassVar

from sqlalchemy import DateTime, Engine, Float, LargeBinary, String, Text, create_engine, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from kiln.build.fingerprint import Fingerprint
from kiln.core.errors import StorageError
from kiln.storage.base import CacheEntry, Storage, fingerprint_dict, register_backend
from kiln.storage.formats import deserialize, serialize

logger = logging.getLogger(__name__)


class CacheBase(DeclarativeBase):
    """Base class for cache models."""

    type_annotation_map: ClassVar[dict[type, Any]] = {}


class EntryRow(CacheBase):
    """One cached target: value blob and fingerprint in the same row."""

    __tablename__ = "entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    format: Mapped[str] = mapped_column(String(32), nullable=False, default="pickle")
    fingerprint_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    built_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @property
    def fingerprint(self) -> dict[str, Any]:
        """Get deserialized fingerprint."""
        return json.loads(self.fingerprint_json)  # type: ignore[no-any-return]

    @fingerprint.setter
    def fingerprint(self, value: dict[str, Any]) -> None:
        """Set serialized fingerprint."""
        self.fingerprint_json = json.dumps(value)

    @property
    def metadata_(self) -> dict[str, Any]:
        """Get deserialized metadata."""
        return json.loads(self.metadata_json)  # type: ignore[no-any-return]

    @metadata_.setter
    def metadata_(self, value: dict[str, Any]) -> None:
        """Set serialized metadata."""
        self.metadata_json = json.dumps(value)


def _create_engine_for_db(db_path: Path) -> Engine:
    """Create a SQLite engine with proper configuration."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        pool_pre_ping=True,
    )


@register_backend("sqlite")
class SQLiteStorage(Storage):
    """Cache stored as rows of a single SQLite file."""

    concurrent_writers = False
    durable = True

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    def _get_session_factory(self) -> sessionmaker[Session]:
        """Create the engine and schema on first use."""
        if self._session_factory is None:
            try:
                self._engine = _create_engine_for_db(self.db_path)
                CacheBase.metadata.create_all(self._engine)
            except (SQLAlchemyError, OSError) as e:
                raise StorageError(f"Cannot open cache database {self.db_path}: {e}") from e
            self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        return self._session_factory

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Yield a session; commit on success, roll back on any error."""
        session = self._get_session_factory()()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Cache database error ({self.db_path}): {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def put(
        self,
        key: str,
        value: Any,
        fingerprint: Fingerprint | dict,
        *,
        format: str = "pickle",
        seconds: float = 0.0,
        metadata: dict | None = None,
    ) -> CacheEntry:
        payload = serialize(value, format)
        entry = CacheEntry(
            key=key,
            value=value,
            fingerprint=fingerprint_dict(fingerprint),
            format=format,
            built_at=datetime.now(timezone.utc),
            seconds=seconds,
            metadata=dict(metadata or {}),
        )
        row = EntryRow(key=key, value=payload, format=format, seconds=seconds, built_at=entry.built_at)
        row.fingerprint = entry.fingerprint
        row.metadata_ = entry.metadata
        with self.session() as session:
            session.merge(row)
        logger.debug("Stored %s (%d bytes) in %s", key, len(payload), self.db_path)
        return entry

    def get_entry(self, key: str) -> CacheEntry | None:
        with self.session() as session:
            row = session.get(EntryRow, key)
            if row is None:
                return None
            return CacheEntry(
                key=row.key,
                value=deserialize(row.value, row.format),
                fingerprint=row.fingerprint,
                format=row.format,
                built_at=row.built_at,
                seconds=row.seconds,
                metadata=row.metadata_,
            )

    def stat(self, key: str) -> CacheEntry | None:
        with self.session() as session:
            row = session.execute(
                select(
                    EntryRow.format,
                    EntryRow.fingerprint_json,
                    EntryRow.metadata_json,
                    EntryRow.seconds,
                    EntryRow.built_at,
                ).where(EntryRow.key == key)
            ).one_or_none()
        if row is None:
            return None
        return CacheEntry(
            key=key,
            value=None,
            fingerprint=json.loads(row.fingerprint_json),
            format=row.format,
            built_at=row.built_at,
            seconds=row.seconds,
            metadata=json.loads(row.metadata_json),
        )

    def exists(self, key: str) -> bool:
        if self._session_factory is None and not self.db_path.exists():
            return False
        with self.session() as session:
            found = session.execute(
                select(EntryRow.key).where(EntryRow.key == key)
            ).scalar_one_or_none()
        return found is not None

    def list_keys(self) -> list[str]:
        if self._session_factory is None and not self.db_path.exists():
            return []
        with self.session() as session:
            return list(session.execute(select(EntryRow.key).order_by(EntryRow.key)).scalars())

    def delete(self, key: str) -> bool:
        with self.session() as session:
            result = session.execute(delete(EntryRow).where(EntryRow.key == key))
        return bool(result.rowcount)

    def close(self) -> None:
        """Dispose of the engine; the next call reopens it."""
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None

    def destroy(self) -> None:
        self.close()
        try:
            self.db_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Cannot remove cache database {self.db_path}: {e}") from e
        logger.debug("Destroyed cache database %s", self.db_path)

    def describe(self) -> str:
        return f"sqlite:{self.db_path}"
