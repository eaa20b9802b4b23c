from __future__ import annotations

import logging
import re
import secrets
import string
import time
from typing import Sequence

from icsmirror.errors import DurabilityDegraded, InvalidArgument, NotFound, StoreUnavailable
from icsmirror.locks import KeyedLocks
from icsmirror.models import DEFAULT_UID_DOMAIN
from icsmirror.uid_store import DURABLE, EphemeralUIDStore, UIDStore

log = logging.getLogger(__name__)

BASE36_ALPHABET = string.digits + string.ascii_lowercase
RANDOM_PART_LENGTH = 8
MAX_UID_LENGTH = 255
_INVALID_UID_CHARS = re.compile(r"[\s,]")


def generate_uid(domain: str = DEFAULT_UID_DOMAIN) -> str:
    timestamp_ms = time.time_ns() // 1_000_000
    random_part = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(RANDOM_PART_LENGTH))
    return f"event-{timestamp_ms}-{random_part}@{domain}"


def is_valid_uid(uid: object) -> bool:
    if not isinstance(uid, str) or not uid:
        return False
    if len(uid) > MAX_UID_LENGTH:
        return False
    return _INVALID_UID_CHARS.search(uid) is None


class UIDAllocator:
    """Mints UIDs and keeps exactly one UID per local event id."""

    def __init__(self, stores: Sequence[UIDStore] | None = None, domain: str = DEFAULT_UID_DOMAIN) -> None:
        self.stores = list(stores) if stores else [EphemeralUIDStore()]
        self.domain = domain
        self._locks = KeyedLocks()

    def generate_uid(self) -> str:
        return generate_uid(self.domain)

    def get_uid(self, event_id: int) -> str:
        if not event_id:
            raise InvalidArgument("event_id is required")
        uid = self._lookup(int(event_id))
        if uid is None:
            raise NotFound(f"No UID stored for event {event_id}")
        return uid

    def store_uid(self, event_id: int, uid: str, calendar_id: int) -> str:
        if not event_id or not uid or not calendar_id:
            raise InvalidArgument("event_id, uid and calendar_id are all required")
        if not is_valid_uid(uid):
            raise InvalidArgument(f"Invalid UID: {uid!r}")
        with self._locks.hold(int(event_id)):
            existing = self._lookup(int(event_id))
            if existing is not None:
                if existing != uid:
                    log.warning(
                        "Refusing to change UID for event %s: keeping %s, ignoring %s",
                        event_id,
                        existing,
                        uid,
                    )
                return existing
            return self._persist(int(event_id), uid, int(calendar_id))

    def get_or_create_uid(self, event_id: int, calendar_id: int) -> str:
        if not event_id or not calendar_id:
            raise InvalidArgument("event_id and calendar_id are required")
        with self._locks.hold(int(event_id)):
            existing = self._lookup(int(event_id))
            if existing is not None:
                return existing
            uid = self.generate_uid()
            winner = self._persist(int(event_id), uid, int(calendar_id))
            if winner == uid:
                log.info("Allocated UID %s for event %s", uid, event_id)
            return winner

    def find_event_id(self, uid: str) -> int:
        for store in self.stores:
            try:
                event_id = store.find_event_id(uid)
            except StoreUnavailable as exc:
                log.warning("Skipping %s UID store during reverse lookup: %s", store.tier, exc)
                continue
            if event_id is not None:
                return event_id
        raise NotFound(f"No event is mapped to UID {uid}")

    def _lookup(self, event_id: int) -> str | None:
        for store in self.stores:
            try:
                uid = store.get(event_id)
            except StoreUnavailable as exc:
                log.warning("Skipping %s UID store during lookup: %s", store.tier, exc)
                continue
            if uid is not None:
                return uid
        return None

    def _persist(self, event_id: int, uid: str, calendar_id: int) -> str:
        failures: list[str] = []
        for store in self.stores:
            try:
                winner = store.put_if_absent(event_id, uid, calendar_id)
            except StoreUnavailable as exc:
                failures.append(f"{store.tier}: {exc}")
                continue
            if store.tier != DURABLE:
                warning = DurabilityDegraded(
                    f"UID {winner} for event {event_id} held by the {store.tier} store"
                    + (f" ({'; '.join(failures)})" if failures else "")
                )
                log.warning("%s", warning)
            return winner
        # The ephemeral tier never raises, so this only happens with a custom chain.
        raise StoreUnavailable(f"No UID store accepted event {event_id}: {'; '.join(failures)}")
