"""Persistence tiers for event UID mappings.

Every tier implements the same small capability interface so the allocator
walks an ordered chain without knowing which tier it is talking to:

* ``durable``: the ``uid_mappings`` table of the SQLite :class:`StateStore`.
* ``bounded``: a rolling store holding the most recent mappings, oldest
  evicted first, optionally mirrored to a JSON file.
* ``ephemeral``: process memory only.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections import OrderedDict
from pathlib import Path

from icsmirror.errors import InvalidArgument, StoreUnavailable
from icsmirror.files import write_text_atomic
from icsmirror.models import DEFAULT_BOUNDED_CAPACITY
from icsmirror.state_store import StateStore

log = logging.getLogger(__name__)

DURABLE = "durable"
BOUNDED = "bounded"
EPHEMERAL = "ephemeral"


class UIDStore:
    tier: str = ""

    def get(self, event_id: int) -> str | None:
        raise NotImplementedError

    def put_if_absent(self, event_id: int, uid: str, calendar_id: int) -> str:
        """Persist the mapping unless ``event_id`` already has one.

        Returns the uid stored for ``event_id`` afterwards, which is the
        earlier writer's uid when the id was already mapped.
        """
        raise NotImplementedError

    def find_event_id(self, uid: str) -> int | None:
        raise NotImplementedError


class DurableUIDStore(UIDStore):
    tier = DURABLE

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def get(self, event_id: int) -> str | None:
        try:
            return self.state_store.fetch_uid_mapping(event_id)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"durable UID store unavailable: {exc}") from exc

    def put_if_absent(self, event_id: int, uid: str, calendar_id: int) -> str:
        try:
            return self.state_store.store_uid_mapping(event_id, uid, calendar_id)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"durable UID store unavailable: {exc}") from exc

    def find_event_id(self, uid: str) -> int | None:
        try:
            return self.state_store.fetch_event_id_for_uid(uid)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"durable UID store unavailable: {exc}") from exc


class EphemeralUIDStore(UIDStore):
    tier = EPHEMERAL

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: OrderedDict[int, tuple[str, int]] = OrderedDict()

    def get(self, event_id: int) -> str | None:
        with self._lock:
            entry = self._entries.get(int(event_id))
        return entry[0] if entry else None

    def put_if_absent(self, event_id: int, uid: str, calendar_id: int) -> str:
        with self._lock:
            existing = self._entries.get(int(event_id))
            if existing is not None:
                return existing[0]
            if self.find_event_id(uid) is not None:
                raise InvalidArgument(f"UID {uid} is already mapped to another event")
            self._entries[int(event_id)] = (uid, int(calendar_id))
            self._after_insert()
            return uid

    def find_event_id(self, uid: str) -> int | None:
        with self._lock:
            for event_id, (stored_uid, _calendar_id) in self._entries.items():
                if stored_uid == uid:
                    return event_id
        return None

    def _after_insert(self) -> None:
        pass

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class BoundedUIDStore(EphemeralUIDStore):
    tier = BOUNDED

    def __init__(self, capacity: int = DEFAULT_BOUNDED_CAPACITY, path: str | None = None) -> None:
        super().__init__()
        self.capacity = max(1, int(capacity))
        self.path = Path(path) if path else None
        if self.path is not None:
            self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except (OSError, ValueError) as exc:
            raise StoreUnavailable(f"bounded UID store unreadable: {exc}") from exc
        for item in data[-self.capacity :]:
            self._entries[int(item["event_id"])] = (str(item["uid"]), int(item["calendar_id"]))

    def _after_insert(self) -> None:
        while len(self._entries) > self.capacity:
            evicted_id, (evicted_uid, _calendar_id) = self._entries.popitem(last=False)
            log.debug("Evicted UID mapping %s -> %s from bounded store", evicted_id, evicted_uid)
        if self.path is None:
            return
        payload = [
            {"event_id": event_id, "uid": uid, "calendar_id": calendar_id}
            for event_id, (uid, calendar_id) in self._entries.items()
        ]
        try:
            write_text_atomic(self.path, json.dumps(payload))
        except OSError as exc:
            raise StoreUnavailable(f"bounded UID store unwritable: {exc}") from exc


def build_uid_stores(
    state_store: StateStore | None = None,
    *,
    bounded_capacity: int = DEFAULT_BOUNDED_CAPACITY,
    bounded_path: str | None = None,
) -> list[UIDStore]:
    """Select the tier chain from the collaborators available at startup."""
    stores: list[UIDStore] = []
    if state_store is not None:
        stores.append(DurableUIDStore(state_store))
    try:
        stores.append(BoundedUIDStore(capacity=bounded_capacity, path=bounded_path))
    except StoreUnavailable as exc:
        log.warning("Bounded UID store disabled: %s", exc)
    stores.append(EphemeralUIDStore())
    return stores
