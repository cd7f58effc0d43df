# backend/possync/client/store.py
"""
Embedded local store.

write() is the only way to mutate: one atomic block that commits on success
and rolls back (and re-raises) on any error. Subscribers are told which
tables changed only AFTER a block commits, never for a rolled-back one.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..time_utils import utcnow
from .models import Base, LocalSetting


logger = logging.getLogger(__name__)

Subscriber = Callable[[frozenset], None]


def _track_changes(session: Session, flush_context, instances) -> None:
    changed = session.info.setdefault("changed_tables", set())
    for obj in list(session.new) + list(session.dirty) + list(session.deleted):
        table = getattr(obj, "__tablename__", None)
        if table:
            changed.add(table)


class LocalStore:
    def __init__(self, url: str = "sqlite://", *, echo: bool = False):
        engine_kwargs = {"echo": echo, "connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **engine_kwargs)
        Base.metadata.create_all(self.engine)

        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        event.listen(self._session_factory, "before_flush", _track_changes)
        self._subscribers: list[Subscriber] = []

    @classmethod
    def from_config(cls, config) -> "LocalStore":
        return cls(config.local_db_url)

    @contextmanager
    def write(self) -> Iterator[Session]:
        """One atomic write block."""
        session = self._session_factory()
        try:
            yield session
            session.flush()
            changed = frozenset(session.info.get("changed_tables", ()))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        if changed:
            self._notify(changed)

    @contextmanager
    def read(self) -> Iterator[Session]:
        """Read-only session. Rows stay usable (detached) after the block."""
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a change listener. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self, changed: frozenset) -> None:
        for callback in list(self._subscribers):
            try:
                callback(changed)
            except Exception:
                # The write is already committed; a broken listener must not undo it
                logger.exception("Store subscriber %r failed", callback)

    # Settings -----------------------------------------------------------------

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self.read() as session:
            row = session.query(LocalSetting).filter_by(key=key).first()
            return row.value if row and row.value is not None else default

    def set_setting(self, key: str, value: Optional[str]) -> None:
        with self.write() as session:
            set_setting(session, key, value)

    def close(self) -> None:
        self.engine.dispose()


def set_setting(session: Session, key: str, value: Optional[str]) -> None:
    """Upsert a setting inside an existing write block."""
    row = session.query(LocalSetting).filter_by(key=key).first()
    if row is None:
        row = LocalSetting(key=key)
        session.add(row)
    row.value = value
    row.updated_at = utcnow()
