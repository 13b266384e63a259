"""
Conversation persistence.

One row per user holds the full message list, the rolling summary and
the time of the last write. Saves are last-write-wins upserts by user
id; no multi-row transaction is ever needed.

Writes are coalesced by DebouncedWriter: every mutation during a turn
reschedules a single pending write, so a turn with many tool round-trips
costs one database write. Destructive operations (clear, shutdown) must
cancel or flush the pending write synchronously first, otherwise a stale
write could land after them and resurrect cleared data.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from sqlalchemy import Column, Float, String, Text, create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import declarative_base, sessionmaker

from parley.types import Message, StoredConversation

logger = logging.getLogger(__name__)

Base = declarative_base()


class ConversationRecord(Base):
    """Stored conversation, one row per user"""

    __tablename__ = "conversations"

    user_id = Column(String(64), primary_key=True)
    messages_json = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    updated_at = Column(Float, nullable=False)


class ConversationStore(ABC):
    """Persistence contract used by the agent loop."""

    @abstractmethod
    def load(self, user_id: str) -> StoredConversation | None:
        """Return the stored conversation, or None if there is none."""

    @abstractmethod
    def save(self, user_id: str, messages: list[Message], summary: str | None = None) -> None:
        """Upsert the user's conversation."""

    @abstractmethod
    def clear(self, user_id: str) -> None:
        """Delete the user's conversation."""

    def close(self) -> None:
        pass

    @staticmethod
    def create(database_url: str) -> "ConversationStore":
        """In-memory store for memory:// URLs, SQL store for anything else."""
        if database_url.startswith("memory://"):
            return InMemoryConversationStore()
        return SQLConversationStore(database_url)


def _encode_messages(messages: list[Message]) -> str:
    return json.dumps([m.to_dict() for m in messages])


def _decode_messages(raw: str) -> list[Message]:
    return [Message.from_dict(m) for m in json.loads(raw)]


class InMemoryConversationStore(ConversationStore):
    """
    Dict-backed store for tests and throwaway sessions.

    Messages are kept serialized so a loaded conversation never aliases
    the caller's live list.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._rows: dict[str, tuple[str, str | None, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.save_count = 0

    def load(self, user_id: str) -> StoredConversation | None:
        with self._lock:
            row = self._rows.get(user_id)
        if row is None:
            return None
        messages_json, summary, updated_at = row
        return StoredConversation(
            messages=_decode_messages(messages_json),
            summary=summary,
            updated_at=updated_at,
        )

    def save(self, user_id: str, messages: list[Message], summary: str | None = None) -> None:
        encoded = _encode_messages(messages)
        with self._lock:
            self._rows[user_id] = (encoded, summary or None, self._clock())
            self.save_count += 1

    def clear(self, user_id: str) -> None:
        with self._lock:
            self._rows.pop(user_id, None)


class SQLConversationStore(ConversationStore):
    """
    SQLAlchemy-backed store (SQLite locally, PostgreSQL in deployment).
    """

    def __init__(self, database_url: str, clock: Callable[[], float] = time.time) -> None:
        self.engine = create_engine(database_url, echo=False)
        self.SessionLocal = sessionmaker(autoflush=False, bind=self.engine)
        self._clock = clock
        Base.metadata.create_all(bind=self.engine)

    def load(self, user_id: str) -> StoredConversation | None:
        with self.SessionLocal() as db:
            row = db.get(ConversationRecord, str(user_id))
            if row is None:
                return None
            try:
                messages = _decode_messages(row.messages_json)
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Discarding undecodable conversation for user {user_id}: {e}")
                return None
            return StoredConversation(
                messages=messages,
                summary=row.summary or None,
                updated_at=row.updated_at,
            )

    def save(self, user_id: str, messages: list[Message], summary: str | None = None) -> None:
        values = {
            "user_id": str(user_id),
            "messages_json": _encode_messages(messages),
            "summary": summary or None,
            "updated_at": self._clock(),
        }
        with self.SessionLocal() as db:
            self._upsert(db, values)
            db.commit()
        logger.debug(f"Saved {len(messages)} messages for user {user_id}")

    def _upsert(self, db, values: dict) -> None:
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            stmt = sqlite.insert(ConversationRecord).values(**values)
        elif dialect == "postgresql":
            stmt = postgresql.insert(ConversationRecord).values(**values)
        else:
            db.merge(ConversationRecord(**values))
            return
        stmt = stmt.on_conflict_do_update(
            index_elements=[ConversationRecord.user_id],
            set_={
                "messages_json": stmt.excluded.messages_json,
                "summary": stmt.excluded.summary,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        db.execute(stmt)

    def clear(self, user_id: str) -> None:
        with self.SessionLocal() as db:
            db.query(ConversationRecord).filter(
                ConversationRecord.user_id == str(user_id)
            ).delete()
            db.commit()
        logger.debug(f"Cleared conversation for user {user_id}")

    def close(self) -> None:
        self.engine.dispose()


class DebouncedWriter:
    """
    Single-slot-per-key pending-write actor.

    schedule() replaces the key's pending write and pushes its deadline
    out by `delay`; a background thread runs each write once its deadline
    passes. flush() and cancel() are synchronous and are serialized with
    the background writes, so after cancel() returns no write for that
    key is pending or in flight.
    """

    def __init__(self, delay: float = 1.0, name: str = "parley-writer") -> None:
        self.delay = delay
        self._pending: dict[str, tuple[float, Callable[[], None]]] = {}
        self._cond = threading.Condition()
        self._write_lock = threading.RLock()
        self._closed = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def schedule(self, key: str, write: Callable[[], None]) -> None:
        with self._cond:
            if not self._closed:
                self._pending[key] = (time.monotonic() + self.delay, write)
                self._cond.notify()
                return
        # after close there is no worker; write through
        with self._write_lock:
            self._execute(key, write)

    def has_pending(self, key: str) -> bool:
        with self._cond:
            return key in self._pending

    def flush(self, key: str | None = None) -> int:
        """Run pending writes now (all keys when key is None). Returns how many ran."""
        with self._write_lock:
            with self._cond:
                if key is None:
                    due = list(self._pending.items())
                    self._pending.clear()
                else:
                    entry = self._pending.pop(key, None)
                    due = [(key, entry)] if entry else []
            for due_key, (_, write) in due:
                self._execute(due_key, write)
            return len(due)

    def cancel(self, key: str) -> bool:
        """Drop the key's pending write. Returns True if one was pending."""
        with self._write_lock:
            with self._cond:
                return self._pending.pop(key, None) is not None

    def cancel_and_run(self, key: str, action: Callable[[], None]) -> None:
        """
        Drop the key's pending write and run action with writes held off.

        Used for destructive operations: no write for the key can run
        between the cancel and the action.
        """
        with self._write_lock:
            with self._cond:
                self._pending.pop(key, None)
            action()

    def close(self) -> None:
        """Flush everything and stop the background thread."""
        self.flush()
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self._thread.join(timeout=5.0)

    def _run(self) -> None:
        while True:
            with self._cond:
                due_key = None
                while not self._closed:
                    if not self._pending:
                        self._cond.wait()
                        continue
                    due_key, (deadline, _) = min(self._pending.items(), key=lambda kv: kv[1][0])
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    self._cond.wait(remaining)
                if self._closed:
                    return

            with self._write_lock:
                with self._cond:
                    entry = self._pending.get(due_key)
                    if entry is None or entry[0] > time.monotonic():
                        continue
                    del self._pending[due_key]
                self._execute(due_key, entry[1])

    @staticmethod
    def _execute(key: str, write: Callable[[], None]) -> None:
        try:
            write()
        except Exception as e:
            logger.error(f"Persisting conversation {key} failed: {e}")
