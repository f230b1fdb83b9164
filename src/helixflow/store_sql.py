# store_sql.py
"""SQL-backed cache store: the CacheStore contract on one `cache_entries` table."""
from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .cache import _json_dumps_stable, decode_outputs, encode_outputs
from .errors import CacheCorruption
from .values import Struct


class Base(DeclarativeBase):
    pass


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class CacheEntry(Base):
    __tablename__ = "cache_entries"
    key: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    task: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    outputs_json: Mapped[str] = mapped_column(sa.Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), default=now_utc, nullable=False)


class SqlCacheStore:
    def __init__(self, url: str):
        self.url = url
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = sa.create_engine(url, pool_pre_ping=True, connect_args=connect_args)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(self.engine, class_=Session, expire_on_commit=False)
        # sqlite allows one writer at a time
        self._write_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"SqlCacheStore({self.engine.url.render_as_string(hide_password=True)!r})"

    def lookup(self, task: str, key: str) -> Optional[Struct]:
        with self.SessionLocal() as s:
            row = s.get(CacheEntry, key)
            if row is None:
                return None
            try:
                return decode_outputs(json.loads(row.outputs_json))
            except (ValueError, TypeError) as e:
                raise CacheCorruption(f"cache_entries[{key}]: {e}") from None

    def record(self, task: str, key: str, outputs: Mapping[str, Any]) -> bool:
        with self._write_lock, self.SessionLocal() as s:
            if s.get(CacheEntry, key) is not None:
                return False
            s.add(CacheEntry(key=key, task=task, outputs_json=_json_dumps_stable(encode_outputs(outputs))))
            try:
                s.commit()
            except IntegrityError:
                # another process inserted the same key first
                s.rollback()
                return False
        return True

    def evict(self, task: str, key: str) -> None:
        with self._write_lock, self.SessionLocal() as s:
            s.execute(sa.delete(CacheEntry).where(CacheEntry.key == key))
            s.commit()

    def prune(self, task: str, keep: int = 3) -> int:
        with self._write_lock, self.SessionLocal() as s:
            stale = s.scalars(
                sa.select(CacheEntry.key)
                .where(CacheEntry.task == task)
                .order_by(CacheEntry.created_at.desc(), CacheEntry.key)
                .offset(keep)
            ).all()
            if stale:
                s.execute(sa.delete(CacheEntry).where(CacheEntry.key.in_(stale)))
                s.commit()
            return len(stale)
