"""
Key/value state store backed by the ``bemacrm_state`` table.

Holds small JSON-serializable engine bookkeeping: batch checkpoints, the
schedule registry, stop flags, failure lists and aggregate stats.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from bema_sync.lib.db import SessionFactory, retry_on_deadlock, session_scope, utcnow
from bema_sync.models.state import StateEntry


class StateStore:
    """Read/write/delete contract over named JSON values."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def get(self, key: str, default: Any = None) -> Any:
        with session_scope(self._session_factory) as db:
            entry = db.get(StateEntry, key)
            if entry is None or entry.value is None:
                return default
            return entry.value

    @retry_on_deadlock
    def set(self, key: str, value: Any) -> None:
        with session_scope(self._session_factory) as db:
            entry = db.get(StateEntry, key)
            if entry is None:
                db.add(StateEntry(key=key, value=value))
            else:
                entry.value = value
                entry.updated_at = utcnow()

    @retry_on_deadlock
    def delete(self, key: str) -> bool:
        with session_scope(self._session_factory) as db:
            entry = db.get(StateEntry, key)
            if entry is None:
                return False
            db.delete(entry)
            return True

    def keys(self, prefix: str = "") -> List[str]:
        with session_scope(self._session_factory) as db:
            stmt = select(StateEntry.key)
            if prefix:
                stmt = stmt.where(StateEntry.key.startswith(prefix, autoescape=True))
            return list(db.scalars(stmt.order_by(StateEntry.key)))

    def items(self, prefix: str = "") -> Dict[str, Any]:
        with session_scope(self._session_factory) as db:
            stmt = select(StateEntry)
            if prefix:
                stmt = stmt.where(StateEntry.key.startswith(prefix, autoescape=True))
            return {entry.key: entry.value for entry in db.scalars(stmt)}

    def append_bounded(self, key: str, item: Any, limit: int, newest_first: bool = True) -> None:
        """Add ``item`` to the list at ``key``, keeping at most ``limit`` entries."""
        current: Optional[list] = self.get(key, [])
        entries = list(current or [])
        if newest_first:
            entries.insert(0, item)
            entries = entries[:limit]
        else:
            entries.append(item)
            entries = entries[-limit:]
        self.set(key, entries)
