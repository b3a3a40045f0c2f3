"""
TesseraSessions - Session storage abstraction.

Defines SessionStore protocol and concrete implementations:
- MemoryStore: In-memory storage (dev/testing)
- FileStore: File-based storage (one JSON file per session)
- CallableStore: Adapts five plain callables (application persistence) to
  the protocol
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import fields
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol

from .core import SessionRecord, utcnow
from .faults import (
    SessionConflictFault,
    SessionNotFoundFault,
    SessionPolicyViolationFault,
    SessionStoreCorruptedFault,
    SessionStoreUnavailableFault,
)


logger = logging.getLogger("tessera.sessions.store")

_UPDATABLE_FIELDS = frozenset(f.name for f in fields(SessionRecord)) - {"handle", "created_at"}


# ============================================================================
# SessionStore Protocol
# ============================================================================

class SessionStore(Protocol):
    """
    Abstract session storage interface.

    Stores are responsible ONLY for persistence - they do NOT enforce policy.
    Policy enforcement happens in the issuer, verifier and SessionContext.

    All methods must be async. Records are copied on the way in and out.
    """

    async def get_session(self, handle: str) -> SessionRecord | None:
        """
        Load a record by handle.

        Returns:
            SessionRecord if found, None otherwise

        Raises:
            SessionStoreUnavailableFault: Store is unavailable
            SessionStoreCorruptedFault: Data is corrupted
        """
        ...

    async def get_sessions(self, user_id: Any) -> list[SessionRecord]:
        """
        List all records of a user, ordered by creation.
        """
        ...

    async def create_session(self, record: SessionRecord) -> SessionRecord:
        """
        Persist a new record.

        Raises:
            SessionConflictFault: Handle already exists
        """
        ...

    async def update_session(self, handle: str, **changes: Any) -> SessionRecord:
        """
        Apply ``changes`` (SessionRecord field names) to an existing record.

        Atomic per handle. ``expires_at`` never moves backward.

        Raises:
            SessionNotFoundFault: Handle does not exist
        """
        ...

    async def delete_session(self, handle: str) -> SessionRecord:
        """
        Delete a record and return it.

        Raises:
            SessionNotFoundFault: Handle does not exist
        """
        ...


def apply_changes(record: SessionRecord, changes: Mapping[str, Any]) -> SessionRecord:
    """
    Return a copy of ``record`` with ``changes`` applied.

    Unknown field names raise SessionPolicyViolationFault. An ``expires_at``
    earlier than the stored one is ignored.
    """
    unknown = set(changes) - _UPDATABLE_FIELDS
    if unknown:
        raise SessionPolicyViolationFault(f"cannot update session fields: {', '.join(sorted(unknown))}")

    updated = record.copy()
    for name, value in changes.items():
        if name == "expires_at" and value is not None and updated.expires_at is not None:
            value = max(value, updated.expires_at)
        setattr(updated, name, value)
    return updated


# ============================================================================
# MemoryStore - In-Memory Storage
# ============================================================================

class MemoryStore:
    """
    In-memory session storage for development and testing.

    Features:
    - Fast in-memory dict storage
    - User index for ``get_sessions``
    - Single asyncio.Lock serializing every operation

    NOT suitable for multi-process deployments (no shared state).

    Example:
        >>> store = MemoryStore()
        >>> await store.create_session(record)
        >>> loaded = await store.get_session(record.handle)
        >>> assert loaded.handle == record.handle
    """

    def __init__(self):
        self._sessions: dict[str, SessionRecord] = {}
        self._user_index: dict[Any, list[str]] = {}  # user_id -> handles, creation order
        self._lock = asyncio.Lock()

    async def get_session(self, handle: str) -> SessionRecord | None:
        """Load record from memory."""
        async with self._lock:
            record = self._sessions.get(handle)
            return record.copy() if record else None

    async def get_sessions(self, user_id: Any) -> list[SessionRecord]:
        """List all records for user."""
        async with self._lock:
            handles = self._user_index.get(user_id, [])
            return [self._sessions[h].copy() for h in handles if h in self._sessions]

    async def create_session(self, record: SessionRecord) -> SessionRecord:
        """Store a new record."""
        async with self._lock:
            if record.handle in self._sessions:
                raise SessionConflictFault(record.handle)

            stored = record.copy()
            self._sessions[stored.handle] = stored
            self._index(stored)
            return stored.copy()

    async def update_session(self, handle: str, **changes: Any) -> SessionRecord:
        """Update a record in place."""
        async with self._lock:
            current = self._sessions.get(handle)
            if current is None:
                raise SessionNotFoundFault(handle)

            updated = apply_changes(current, changes)
            self._sessions[handle] = updated

            if updated.user_id != current.user_id:
                self._unindex(current)
                self._index(updated)

            return updated.copy()

    async def delete_session(self, handle: str) -> SessionRecord:
        """Remove a record."""
        async with self._lock:
            record = self._sessions.pop(handle, None)
            if record is None:
                raise SessionNotFoundFault(handle)

            self._unindex(record)
            return record

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        """Remove expired records. Returns number removed."""
        now = now or utcnow()
        async with self._lock:
            expired = [h for h, r in self._sessions.items() if r.is_expired(now)]
            for handle in expired:
                self._unindex(self._sessions.pop(handle))

        if expired:
            logger.info("Removed %d expired sessions from memory store", len(expired))
        return len(expired)

    def _index(self, record: SessionRecord) -> None:
        if record.user_id is not None:
            self._user_index.setdefault(record.user_id, []).append(record.handle)

    def _unindex(self, record: SessionRecord) -> None:
        handles = self._user_index.get(record.user_id)
        if not handles:
            return
        if record.handle in handles:
            handles.remove(record.handle)
        if not handles:
            del self._user_index[record.user_id]

    # Utility methods for debugging
    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        return {
            "total_sessions": len(self._sessions),
            "total_users": len(self._user_index),
        }


# ============================================================================
# FileStore - File-Based Storage
# ============================================================================

class FileStore:
    """
    File-based session storage.

    Features:
    - One JSON file per record, named by the handle digest
    - Atomic writes (write to temp file, then rename)
    - Human-readable format

    ``get_sessions`` scans every file, so large deployments should provide
    their own store.

    Example:
        >>> store = FileStore(directory="/tmp/sessions")
        >>> await store.create_session(record)
        >>> loaded = await store.get_session(record.handle)
    """

    def __init__(self, directory: str | Path):
        """
        Initialize file store.

        Args:
            directory: Directory to store session files
        """
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _get_path(self, handle: str) -> Path:
        """Get file path for handle (handles contain ':', so hash them)."""
        digest = hashlib.sha256(handle.encode()).hexdigest()
        return self.directory / f"sess_{digest}.json"

    async def get_session(self, handle: str) -> SessionRecord | None:
        """Load record from file."""
        async with self._lock:
            return self._read(self._get_path(handle))

    async def get_sessions(self, user_id: Any) -> list[SessionRecord]:
        """List records for user (slow - scans all files)."""
        async with self._lock:
            records = [
                record
                for record in (self._read(path) for path in self.directory.glob("sess_*.json"))
                if record is not None and record.user_id == user_id
            ]
        return sorted(records, key=lambda r: r.created_at)

    async def create_session(self, record: SessionRecord) -> SessionRecord:
        """Write a new record file."""
        path = self._get_path(record.handle)
        async with self._lock:
            if path.exists():
                raise SessionConflictFault(record.handle)
            self._write(path, record)
        return record.copy()

    async def update_session(self, handle: str, **changes: Any) -> SessionRecord:
        """Rewrite a record file with ``changes`` applied."""
        path = self._get_path(handle)
        async with self._lock:
            current = self._read(path)
            if current is None:
                raise SessionNotFoundFault(handle)
            updated = apply_changes(current, changes)
            self._write(path, updated)
        return updated

    async def delete_session(self, handle: str) -> SessionRecord:
        """Delete record file."""
        path = self._get_path(handle)
        async with self._lock:
            record = self._read(path)
            if record is None:
                raise SessionNotFoundFault(handle)
            try:
                path.unlink()
            except OSError as e:
                raise SessionStoreUnavailableFault(store_name="file", cause=str(e))
        return record

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        """Remove expired record files. Returns number removed."""
        now = now or utcnow()
        removed = 0

        async with self._lock:
            for path in self.directory.glob("sess_*.json"):
                try:
                    record = self._read(path)
                except SessionStoreCorruptedFault:
                    logger.warning("Skipping corrupted session file %s", path.name)
                    continue

                if record is not None and record.is_expired(now):
                    path.unlink()
                    removed += 1

        if removed:
            logger.info("Removed %d expired session files", removed)
        return removed

    def _read(self, path: Path) -> SessionRecord | None:
        try:
            data = path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise SessionStoreUnavailableFault(store_name="file", cause=str(e))

        try:
            return SessionRecord.from_dict(json.loads(data))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise SessionStoreCorruptedFault(
                message=f"Session file corrupted: {e}",
                metadata={"file": path.name},
            )

    def _write(self, path: Path, record: SessionRecord) -> None:
        temp_path = path.with_suffix(".tmp")
        try:
            temp_path.write_text(json.dumps(record.to_dict(), indent=2))
            os.replace(temp_path, path)
        except OSError as e:
            raise SessionStoreUnavailableFault(store_name="file", cause=str(e))

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        paths = list(self.directory.glob("sess_*.json"))
        return {
            "total_sessions": len(paths),
            "total_size_bytes": sum(p.stat().st_size for p in paths),
            "directory": str(self.directory),
        }


# ============================================================================
# CallableStore - Application-Provided Persistence
# ============================================================================

class CallableStore:
    """
    Adapts the five store callables from configuration to SessionStore.

    Callables may be sync or async. They exchange plain dicts in the
    ``SessionRecord.to_dict`` shape (camelCase keys):

    - get_session(handle) -> dict | None
    - get_sessions(user_id) -> list[dict]
    - create_session(data) -> dict | None
    - update_session(handle, changes) -> dict | None
    - delete_session(handle) -> dict | None

    ``update_session`` and ``delete_session`` returning None means the handle
    did not exist. Atomicity and monotonic expiry are the callables' job.

    Exceptions raised by the callables propagate unchanged. Raise
    SessionStoreUnavailableFault for transient backend failures so the
    anonymous path can fall back to token data.

    Example:
        >>> store = CallableStore(**config.store_callables())
    """

    def __init__(
        self,
        get_session: Callable[..., Any],
        get_sessions: Callable[..., Any],
        create_session: Callable[..., Any],
        update_session: Callable[..., Any],
        delete_session: Callable[..., Any],
    ):
        self._get_session = get_session
        self._get_sessions = get_sessions
        self._create_session = create_session
        self._update_session = update_session
        self._delete_session = delete_session

    async def get_session(self, handle: str) -> SessionRecord | None:
        data = await _call(self._get_session, handle)
        return _to_record(data) if data is not None else None

    async def get_sessions(self, user_id: Any) -> list[SessionRecord]:
        rows = await _call(self._get_sessions, user_id) or []
        return sorted((_to_record(row) for row in rows), key=lambda r: r.created_at)

    async def create_session(self, record: SessionRecord) -> SessionRecord:
        data = await _call(self._create_session, record.to_dict())
        return _to_record(data) if data is not None else record.copy()

    async def update_session(self, handle: str, **changes: Any) -> SessionRecord:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise SessionPolicyViolationFault(f"cannot update session fields: {', '.join(sorted(unknown))}")

        # Serialize through to_dict so the callable sees wire keys
        draft = SessionRecord(handle=handle)
        for name, value in changes.items():
            setattr(draft, name, value)
        wire = draft.to_dict()
        wire_changes = {key: wire[key] for key in _wire_keys(changes)}

        data = await _call(self._update_session, handle, wire_changes)
        if data is None:
            raise SessionNotFoundFault(handle)
        return _to_record(data)

    async def delete_session(self, handle: str) -> SessionRecord:
        data = await _call(self._delete_session, handle)
        if data is None:
            raise SessionNotFoundFault(handle)
        return _to_record(data)


_WIRE_KEYS = {
    "user_id": "userId",
    "hashed_session_token": "hashedSessionToken",
    "anti_csrf_token": "antiCSRFToken",
    "expires_at": "expiresAt",
    "public_data": "publicData",
    "private_data": "privateData",
}


def _wire_keys(changes: Mapping[str, Any]) -> list[str]:
    return [_WIRE_KEYS[name] for name in changes]


async def _call(func: Callable[..., Any], *args: Any) -> Any:
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _to_record(data: Any) -> SessionRecord:
    if isinstance(data, SessionRecord):
        return data.copy()
    if not isinstance(data, Mapping):
        raise SessionStoreCorruptedFault(
            message=f"Session store returned {type(data).__name__}, expected a mapping",
        )
    try:
        return SessionRecord.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise SessionStoreCorruptedFault(message=f"Session data corrupted: {e}")


# ============================================================================
# Maintenance
# ============================================================================

async def cleanup_expired(store: Any, now: datetime | None = None) -> int:
    """
    Remove expired records from ``store``.

    There is no background scheduler; operators call this periodically.
    Only stores that implement ``cleanup_expired`` are supported.
    """
    cleanup = getattr(store, "cleanup_expired", None)
    if cleanup is None:
        logger.debug("Store %s has no cleanup_expired; nothing removed", type(store).__name__)
        return 0
    return await cleanup(now)


__all__ = [
    "SessionStore",
    "MemoryStore",
    "FileStore",
    "CallableStore",
    "apply_changes",
    "cleanup_expired",
]
