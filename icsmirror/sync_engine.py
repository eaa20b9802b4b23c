from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from icsmirror.config_manager import ConfigManager
from icsmirror.errors import InvalidArgument, NotFound, SyncFailure, TransientSyncFailure
from icsmirror.ics_codec import decode_event, encode
from icsmirror.ics_lines import extract_sequence, extract_x_properties
from icsmirror.locks import KeyedLocks
from icsmirror.merge import changed_fields, merge
from icsmirror.models import (
    ACKNOWLEDGED,
    CANCEL,
    CREATE,
    ENCODING,
    FAILED,
    PENDING,
    SENDING,
    UPDATE,
    EventRecord,
    SyncConfig,
    SyncResult,
    utc_now,
)
from icsmirror.state_store import StateStore
from icsmirror.transport import CalDAVTransport
from icsmirror.uid_allocator import UIDAllocator
from icsmirror.uid_store import build_uid_stores

log = logging.getLogger(__name__)

DRIFT_FIELDS = ("title", "start", "end", "all_day", "recurrence_rule", "location", "description")


@dataclass
class DriftReport:
    event_id: int
    uid: str
    local_sequence: int | None
    remote_sequence: int | None
    in_sync: bool
    message: str
    differences: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "uid": self.uid,
            "local_sequence": self.local_sequence,
            "remote_sequence": self.remote_sequence,
            "in_sync": self.in_sync,
            "message": self.message,
            "differences": self.differences,
        }


def _drift_value(record: EventRecord, name: str) -> Any:
    value = getattr(record, name)
    # Payload timestamps carry whole seconds.
    if isinstance(value, datetime):
        return value.replace(microsecond=0)
    return value


def _elapsed_ms(started_at: datetime) -> int:
    return int((utc_now() - started_at).total_seconds() * 1000)


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    log.warning("Transient sync failure on attempt %s, retrying: %s", retry_state.attempt_number, error)


class SyncOrchestrator:
    """Drives merge, UID resolution, encoding and delivery of one event at a time.

    Attempts for the same UID are serialized from ENCODING until a terminal
    state is recorded; different UIDs proceed in parallel.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        uid_allocator: UIDAllocator | None = None,
        transport: CalDAVTransport | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        if uid_allocator is None:
            uid_config = config_manager.load().uid
            uid_allocator = UIDAllocator(
                build_uid_stores(
                    state_store,
                    bounded_capacity=uid_config.bounded_capacity,
                    bounded_path=uid_config.bounded_path or None,
                ),
                domain=uid_config.domain,
            )
        self.uid_allocator = uid_allocator
        self._transport = transport
        self._uid_locks = KeyedLocks()

    def _get_transport(self) -> CalDAVTransport:
        if self._transport is not None:
            return self._transport
        return CalDAVTransport(self.config_manager.load().caldav)

    def save_event(self, event_id: int | None, changes: Mapping[str, Any]) -> SyncResult:
        """Apply a partial update (or create when ``event_id`` is None) and push it."""
        stored = self.state_store.fetch_event(event_id) if event_id is not None else None
        if stored is not None and not stored.active:
            raise InvalidArgument(f"Event {event_id} is cancelled and cannot be updated")

        merged = merge(stored, changes)
        patches = changed_fields(stored, merged)
        if stored is not None and not patches and stored.sync_status.state == ACKNOWLEDGED:
            log.info("Event %s unchanged, nothing to sync", stored.id)
            return SyncResult(
                status=ACKNOWLEDGED,
                message="no changes",
                operation=UPDATE,
                event_id=stored.id,
                uid=stored.uid,
                sequence=stored.sequence,
                attempts=0,
                duration_ms=0,
            )

        merged.updated_at = utc_now()
        record = self.state_store.persist_event(merged)
        self.state_store.set_sync_state(record.id, state=PENDING, operation=record.sync_status.operation)
        record = self._ensure_uid(record)
        log.info("Event %s (%s) saved locally: %s", record.id, record.uid, [p["field"] for p in patches])
        return self._sync(record, UPDATE if record.raw_ics else CREATE)

    def cancel_event(self, event_id: int) -> SyncResult:
        record = self.state_store.fetch_event(event_id)
        if not record.active:
            return SyncResult(
                status=ACKNOWLEDGED,
                message="already cancelled",
                operation=CANCEL,
                event_id=record.id,
                uid=record.uid,
                sequence=record.sequence,
                attempts=0,
                duration_ms=0,
            )
        record.updated_at = utc_now()
        record = self.state_store.persist_event(record)
        self.state_store.set_sync_state(record.id, state=PENDING, operation=CANCEL)
        record = self._ensure_uid(record)
        return self._sync(record, CANCEL)

    def retry_event(self, event_id: int) -> SyncResult:
        record = self.state_store.fetch_event(event_id)
        if not record.active:
            return SyncResult(
                status=ACKNOWLEDGED,
                message="already cancelled",
                operation=CANCEL,
                event_id=record.id,
                uid=record.uid,
                sequence=record.sequence,
                attempts=0,
                duration_ms=0,
            )
        record = self._ensure_uid(record)
        if record.sync_status.operation == CANCEL and record.sync_status.state != ACKNOWLEDGED:
            operation = CANCEL
        else:
            operation = UPDATE if record.raw_ics else CREATE
        return self._sync(record, operation)

    def check_drift(self, event_id: int) -> DriftReport:
        """Compare the acknowledged local state with what the server holds now."""
        record = self.state_store.fetch_event(event_id)
        local_sequence = extract_sequence(record.raw_ics) if record.raw_ics else None
        if local_sequence is not None and local_sequence != record.sequence:
            log.warning(
                "Event %s stores sequence %s but its payload says %s",
                record.id,
                record.sequence,
                local_sequence,
            )
        try:
            remote_ics = self._get_transport().get(record.uid)
        except NotFound:
            return DriftReport(
                event_id=record.id,
                uid=record.uid,
                local_sequence=local_sequence,
                remote_sequence=None,
                in_sync=local_sequence is None,
                message="remote resource missing",
            )
        remote = decode_event(remote_ics)
        differences = []
        for name in DRIFT_FIELDS:
            local_value = _drift_value(record, name)
            remote_value = _drift_value(remote, name)
            if local_value != remote_value:
                differences.append({"field": name, "local": str(local_value), "remote": str(remote_value)})
        remote_sequence = extract_sequence(remote_ics)
        in_sync = remote_sequence == local_sequence and not differences
        return DriftReport(
            event_id=record.id,
            uid=record.uid,
            local_sequence=local_sequence,
            remote_sequence=remote_sequence,
            in_sync=in_sync,
            message="in sync" if in_sync else "remote differs from acknowledged state",
            differences=differences,
        )

    def _ensure_uid(self, record: EventRecord) -> EventRecord:
        uid = self.uid_allocator.get_or_create_uid(record.id, record.calendar_id)
        if record.uid == uid:
            return record
        if record.uid:
            log.warning("Event %s carries UID %s but %s is registered; using the registered one", record.id, record.uid, uid)
        record.uid = uid
        return self.state_store.persist_event(record)

    def _transition(self, record: EventRecord, state: str, operation: str) -> None:
        log.info("Event %s (%s) %s -> %s", record.id, record.uid, operation, state)
        self.state_store.set_sync_state(record.id, state=state, operation=operation)

    def _push(self, transport: CalDAVTransport, uid: str, payload: str, config: SyncConfig) -> int:
        retrying = Retrying(
            stop=stop_after_attempt(config.retry_attempts),
            wait=wait_exponential(multiplier=config.backoff_seconds, max=config.backoff_max_seconds),
            retry=retry_if_exception_type(TransientSyncFailure),
            before_sleep=_log_retry,
            reraise=True,
        )
        attempts = 0
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    transport.put(uid, payload)
        except SyncFailure as exc:
            exc.attempts = attempts
            raise
        return attempts

    def _sync(self, record: EventRecord, operation: str) -> SyncResult:
        started_at = utc_now()
        config = self.config_manager.load()
        with self._uid_locks.hold(record.uid):
            # Re-read under the lock so the prior payload is the latest acknowledged one.
            record = self.state_store.fetch_event(record.id)
            self._transition(record, ENCODING, operation)
            try:
                payload = encode(record, operation, record.raw_ics or None, dtstamp=record.updated_at)
            except InvalidArgument as exc:
                return self._fail(record, operation, str(exc), "", 0, None, started_at)
            sequence = extract_sequence(payload)

            self._transition(record, SENDING, operation)
            try:
                attempts = self._push(self._get_transport(), record.uid, payload, config.sync)
            except SyncFailure as exc:
                return self._fail(record, operation, str(exc), payload, exc.attempts, sequence, started_at)

            acknowledged = self.state_store.record_acknowledgement(
                record.id,
                sequence=sequence,
                raw_ics=payload,
                x_properties=extract_x_properties(payload),
                operation=operation,
                state=ACKNOWLEDGED,
                sent_at=utc_now(),
                deactivate=operation == CANCEL,
            )
            if not acknowledged:
                log.warning("Event %s: sequence %s does not advance the stored one, not recorded", record.id, sequence)
            log.info("Event %s (%s) %s -> %s at sequence %s", record.id, record.uid, operation, ACKNOWLEDGED, sequence)
            return self._finish(record, operation, ACKNOWLEDGED, "acknowledged", attempts, sequence, started_at)

    def _fail(
        self,
        record: EventRecord,
        operation: str,
        error: str,
        payload: str,
        attempts: int,
        sequence: int | None,
        started_at: datetime,
    ) -> SyncResult:
        log.error("Event %s (%s) %s -> %s: %s", record.id, record.uid, operation, FAILED, error)
        self.state_store.record_sync_failure(
            record.id,
            error=error,
            attempted_ics=payload,
            operation=operation,
            state=FAILED,
        )
        return self._finish(record, operation, FAILED, error, attempts, sequence, started_at)

    def _finish(
        self,
        record: EventRecord,
        operation: str,
        status: str,
        message: str,
        attempts: int,
        sequence: int | None,
        started_at: datetime,
    ) -> SyncResult:
        duration_ms = _elapsed_ms(started_at)
        self.state_store.record_sync_attempt(
            event_id=record.id,
            uid=record.uid,
            operation=operation,
            status=status,
            message=message,
            attempts=attempts,
            sequence=sequence,
            duration_ms=duration_ms,
        )
        return SyncResult(
            status=status,
            message=message,
            operation=operation,
            event_id=record.id,
            uid=record.uid,
            sequence=sequence,
            attempts=attempts,
            duration_ms=duration_ms,
        )
