import tempfile
import threading
import unittest
from pathlib import Path
from typing import Any
from unittest import mock

from icsmirror.config_manager import ConfigManager
from icsmirror.errors import IncompleteRecord, InvalidArgument, NotFound, RejectedByServer, TransientSyncFailure
from icsmirror.ics_lines import extract_sequence, extract_uid
from icsmirror.models import ACKNOWLEDGED, CANCEL, CREATE, FAILED, UPDATE
from icsmirror.state_store import StateStore
from icsmirror.sync_engine import SyncOrchestrator
from icsmirror.transport import PutResult
from icsmirror.uid_allocator import is_valid_uid

NEW_EVENT = {
    "calendar_id": 7,
    "title": "Planning",
    "start": "2026-03-02T09:00:00Z",
    "end": "2026-03-02T10:00:00Z",
    "location": "Room 1",
    "organizer": {"email": "olivia@example.com", "name": "Olivia"},
    "attendees": [
        {"email": "alice@example.com", "status": "ACCEPTED"},
        {"email": "bob@example.com"},
    ],
}


class _FakeTransport:
    def __init__(self, failures: list[Exception] | None = None) -> None:
        self.failures = list(failures or [])
        self.puts: list[tuple[str, str]] = []
        self.remote: dict[str, str] = {}
        self._lock = threading.Lock()

    def put(self, uid: str, ics: str, etag: str | None = None) -> PutResult:
        with self._lock:
            self.puts.append((uid, ics))
            if self.failures:
                raise self.failures.pop(0)
            self.remote[uid] = ics
        return PutResult(url=f"https://dav.example.com/cal/{uid}.ics", status_code=201)

    def get(self, uid: str) -> str:
        if uid not in self.remote:
            raise NotFound(uid)
        return self.remote[uid]


class SyncOrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_manager = ConfigManager(str(Path(self.temp_dir.name) / "config.yaml"))
        self.config_manager.update(
            {
                "caldav": {"collection_url": "https://dav.example.com/cal/"},
                "sync": {"retry_attempts": 3, "backoff_seconds": 0, "backoff_max_seconds": 0},
            }
        )
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.transport = _FakeTransport()
        self.orchestrator = SyncOrchestrator(self.config_manager, self.state_store, transport=self.transport)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _create(self) -> Any:
        result = self.orchestrator.save_event(None, NEW_EVENT)
        self.assertEqual(result.status, ACKNOWLEDGED)
        return result

    def test_create_acknowledged(self) -> None:
        result = self._create()
        self.assertTrue(result.ok)
        self.assertEqual(result.operation, CREATE)
        self.assertEqual(result.sequence, 0)
        self.assertEqual(result.attempts, 1)

        record = self.state_store.fetch_event(result.event_id)
        self.assertTrue(is_valid_uid(record.uid))
        self.assertEqual(self.state_store.fetch_uid_mapping(record.id), record.uid)
        self.assertEqual(record.sequence, 0)
        self.assertEqual(record.raw_ics, self.transport.puts[0][1])
        self.assertEqual(extract_uid(record.raw_ics), record.uid)
        self.assertIn("METHOD:PUBLISH", record.raw_ics)
        self.assertEqual(record.sync_status.state, ACKNOWLEDGED)

    def test_incomplete_create_is_rejected_without_side_effects(self) -> None:
        with self.assertRaises(IncompleteRecord):
            self.orchestrator.save_event(None, {"title": "Missing everything"})
        self.assertEqual(self.transport.puts, [])
        self.assertEqual(self.state_store.count_uid_mappings(), 0)

    def test_update_unknown_event(self) -> None:
        with self.assertRaises(NotFound):
            self.orchestrator.save_event(404, {"title": "Nope"})

    def test_sequences_advance_by_one(self) -> None:
        event_id = self._create().event_id
        for index in range(1, 4):
            result = self.orchestrator.save_event(event_id, {"title": f"Planning v{index}"})
            self.assertEqual(result.operation, UPDATE)
            self.assertEqual(result.sequence, index)
        sent = [extract_sequence(ics) for _uid, ics in self.transport.puts]
        self.assertEqual(sent, [0, 1, 2, 3])
        self.assertEqual(len({uid for uid, _ics in self.transport.puts}), 1)
        self.assertEqual(self.state_store.fetch_event(event_id).sequence, 3)

    def test_title_only_update_keeps_attendees_and_x_properties(self) -> None:
        event_id = self._create().event_id
        record = self.state_store.fetch_event(event_id)
        server_copy = record.raw_ics.replace("SEQUENCE:0", "SEQUENCE:1").replace(
            "END:VEVENT", "X-CUSTOM-FIELD:value\r\nEND:VEVENT"
        )
        self.state_store.record_acknowledgement(
            event_id,
            sequence=1,
            raw_ics=server_copy,
            x_properties=["X-CUSTOM-FIELD:value"],
            operation=UPDATE,
            state=ACKNOWLEDGED,
            sent_at=record.updated_at,
        )

        result = self.orchestrator.save_event(event_id, {"title": "Renamed"})

        payload = self.transport.puts[-1][1]
        lines = payload.split("\r\n")
        self.assertEqual(result.sequence, 2)
        self.assertIn("SUMMARY:Renamed", lines)
        self.assertIn("X-CUSTOM-FIELD:value", lines)
        self.assertEqual(len([line for line in lines if line.startswith("ATTENDEE")]), 2)

    def test_explicit_empty_attendees_clears(self) -> None:
        event_id = self._create().event_id
        self.orchestrator.save_event(event_id, {"attendees": []})
        self.assertNotIn("ATTENDEE", self.transport.puts[-1][1])
        self.assertEqual(self.state_store.fetch_event(event_id).attendees, [])

    def test_unchanged_save_sends_nothing(self) -> None:
        event_id = self._create().event_id
        result = self.orchestrator.save_event(event_id, {"title": "Planning"})
        self.assertEqual(result.message, "no changes")
        self.assertEqual(result.attempts, 0)
        self.assertEqual(len(self.transport.puts), 1)

    def test_transient_failure_then_success(self) -> None:
        self.transport.failures = [TransientSyncFailure("503 Service Unavailable", status_code=503)]
        with self.assertLogs("icsmirror.sync_engine", level="WARNING"):
            result = self._create()
        self.assertEqual(result.attempts, 2)
        self.assertEqual(len(self.transport.puts), 2)
        self.assertEqual(self.transport.puts[0][1], self.transport.puts[1][1])

    def test_retry_exhaustion_keeps_acknowledged_state(self) -> None:
        event_id = self._create().event_id
        acknowledged = self.state_store.fetch_event(event_id)
        self.transport.failures = [TransientSyncFailure("timeout") for _ in range(3)]

        result = self.orchestrator.save_event(event_id, {"title": "Will fail"})

        self.assertEqual(result.status, FAILED)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(len(self.transport.puts), 4)
        record = self.state_store.fetch_event(event_id)
        self.assertEqual(record.sequence, acknowledged.sequence)
        self.assertEqual(record.raw_ics, acknowledged.raw_ics)
        self.assertEqual(record.title, "Will fail")
        self.assertEqual(record.sync_status.state, FAILED)
        self.assertEqual(record.sync_status.last_error, "timeout")
        self.assertEqual(extract_sequence(record.sync_status.last_attempted_ics), 1)

    def test_rejection_is_not_retried(self) -> None:
        self.transport.failures = [RejectedByServer("412 Precondition Failed", status_code=412)]
        result = self.orchestrator.save_event(None, NEW_EVENT)
        self.assertEqual(result.status, FAILED)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(len(self.transport.puts), 1)

    def test_retry_after_failure_reuses_sequence(self) -> None:
        event_id = self._create().event_id
        self.transport.failures = [RejectedByServer("409 Conflict", status_code=409)]
        failed = self.orchestrator.save_event(event_id, {"title": "Second"})
        self.assertEqual(failed.status, FAILED)

        result = self.orchestrator.retry_event(event_id)

        self.assertEqual(result.status, ACKNOWLEDGED)
        self.assertEqual(result.operation, UPDATE)
        self.assertEqual(result.sequence, 1)
        self.assertEqual(self.transport.puts[-1][1], self.transport.puts[-2][1])

    def test_retry_of_failed_create(self) -> None:
        self.transport.failures = [RejectedByServer("400 Bad Request", status_code=400)]
        event_id = self.orchestrator.save_event(None, NEW_EVENT).event_id
        result = self.orchestrator.retry_event(event_id)
        self.assertEqual(result.operation, CREATE)
        self.assertEqual(result.sequence, 0)

    def test_cancel(self) -> None:
        created = self._create()
        result = self.orchestrator.cancel_event(created.event_id)

        self.assertEqual(result.status, ACKNOWLEDGED)
        self.assertEqual(result.operation, CANCEL)
        payload = self.transport.puts[-1][1]
        lines = payload.split("\r\n")
        self.assertIn("METHOD:CANCEL", lines)
        self.assertIn("STATUS:CANCELLED", lines)
        self.assertIn("SEQUENCE:1", lines)
        self.assertEqual(extract_uid(payload), created.uid)
        self.assertFalse(self.state_store.fetch_event(created.event_id).active)

    def test_cancelled_event_is_final(self) -> None:
        event_id = self._create().event_id
        self.orchestrator.cancel_event(event_id)
        sent = len(self.transport.puts)

        again = self.orchestrator.cancel_event(event_id)
        self.assertEqual(again.message, "already cancelled")
        self.assertEqual(self.orchestrator.retry_event(event_id).message, "already cancelled")
        with self.assertRaises(InvalidArgument):
            self.orchestrator.save_event(event_id, {"title": "Revived"})
        self.assertEqual(len(self.transport.puts), sent)

    def test_cancel_never_synced_event(self) -> None:
        self.transport.failures = [RejectedByServer("403 Forbidden", status_code=403)]
        event_id = self.orchestrator.save_event(None, NEW_EVENT).event_id
        result = self.orchestrator.cancel_event(event_id)
        self.assertEqual(result.status, ACKNOWLEDGED)
        self.assertEqual(result.sequence, 1)

    def test_failed_cancel_is_retried_as_cancel(self) -> None:
        event_id = self._create().event_id
        self.transport.failures = [RejectedByServer("423 Locked", status_code=423)]
        self.assertEqual(self.orchestrator.cancel_event(event_id).status, FAILED)
        self.assertTrue(self.state_store.fetch_event(event_id).active)

        result = self.orchestrator.retry_event(event_id)
        self.assertEqual(result.operation, CANCEL)
        self.assertEqual(result.status, ACKNOWLEDGED)
        self.assertFalse(self.state_store.fetch_event(event_id).active)

    def test_concurrent_updates_get_distinct_sequences(self) -> None:
        event_id = self._create().event_id
        barrier = threading.Barrier(8)
        results = []

        def update(index: int) -> None:
            barrier.wait()
            results.append(self.orchestrator.save_event(event_id, {"title": f"Parallel {index}"}))

        threads = [threading.Thread(target=update, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertTrue(all(result.status == ACKNOWLEDGED for result in results))
        self.assertEqual(sorted(result.sequence for result in results), list(range(1, 9)))
        self.assertEqual(self.state_store.fetch_event(event_id).sequence, 8)

    def test_every_attempt_is_recorded(self) -> None:
        event_id = self._create().event_id
        self.orchestrator.save_event(event_id, {"title": "Again"})
        rows = self.state_store.recent_sync_attempts(event_id=event_id)
        self.assertEqual([row["operation"] for row in rows], [UPDATE, CREATE])
        self.assertEqual([row["sequence"] for row in rows], [1, 0])

    def test_check_drift_in_sync(self) -> None:
        event_id = self._create().event_id
        report = self.orchestrator.check_drift(event_id)
        self.assertTrue(report.in_sync)
        self.assertEqual(report.local_sequence, 0)
        self.assertEqual(report.remote_sequence, 0)

    def test_check_drift_detects_remote_edits(self) -> None:
        created = self._create()
        remote = self.transport.remote[created.uid]
        self.transport.remote[created.uid] = remote.replace("SUMMARY:Planning", "SUMMARY:Edited elsewhere").replace(
            "SEQUENCE:0", "SEQUENCE:5"
        )
        report = self.orchestrator.check_drift(created.event_id)
        self.assertFalse(report.in_sync)
        self.assertEqual(report.remote_sequence, 5)
        self.assertEqual([item["field"] for item in report.differences], ["title"])

    def test_organizer_name_change_is_sent(self) -> None:
        event_id = self._create().event_id
        result = self.orchestrator.save_event(
            event_id, {"organizer": {"email": "olivia@example.com", "name": "Olivia Owner"}}
        )
        self.assertEqual(result.status, ACKNOWLEDGED)
        self.assertEqual(result.sequence, 1)
        self.assertEqual(len(self.transport.puts), 2)
        self.assertIn("ORGANIZER;CN=Olivia Owner:mailto:olivia@example.com", self.transport.puts[1][1])
        self.assertEqual(self.state_store.fetch_event(event_id).organizer.name, "Olivia Owner")

    def test_check_drift_ignores_sub_second_precision(self) -> None:
        event = dict(NEW_EVENT, start="2026-03-02T09:00:00.500000Z", end="2026-03-02T10:00:00.250000Z")
        created = self.orchestrator.save_event(None, event)
        report = self.orchestrator.check_drift(created.event_id)
        self.assertTrue(report.in_sync)
        self.assertEqual(report.differences, [])

    def test_check_drift_recurring_all_day_event(self) -> None:
        event = dict(
            NEW_EVENT,
            start="2026-03-02T00:00:00Z",
            end="2026-03-03T00:00:00Z",
            all_day=True,
            recurrence_rule="FREQ=WEEKLY;COUNT=4",
        )
        created = self.orchestrator.save_event(None, event)
        self.assertIn("RRULE:FREQ=WEEKLY;COUNT=4", self.transport.puts[0][1])
        self.assertTrue(self.orchestrator.check_drift(created.event_id).in_sync)

        remote = self.transport.remote[created.uid]
        self.transport.remote[created.uid] = remote.replace("RRULE:FREQ=WEEKLY;COUNT=4", "RRULE:FREQ=WEEKLY;COUNT=8")
        report = self.orchestrator.check_drift(created.event_id)
        self.assertEqual([item["field"] for item in report.differences], ["recurrence_rule"])

    def test_check_drift_missing_remote(self) -> None:
        created = self._create()
        del self.transport.remote[created.uid]
        report = self.orchestrator.check_drift(created.event_id)
        self.assertFalse(report.in_sync)
        self.assertEqual(report.message, "remote resource missing")


class DefaultTransportTests(unittest.TestCase):
    def test_builds_transport_from_config(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            config_manager.update({"caldav": {"collection_url": "https://dav.example.com/cal/"}})
            state_store = StateStore(str(Path(temp_dir) / "state.db"))
            orchestrator = SyncOrchestrator(config_manager, state_store)
            with mock.patch("icsmirror.sync_engine.CalDAVTransport") as transport_cls:
                transport_cls.return_value.put.return_value = PutResult(url="u", status_code=201)
                result = orchestrator.save_event(None, NEW_EVENT)
            self.assertEqual(result.status, ACKNOWLEDGED)
            config = transport_cls.call_args.args[0]
            self.assertEqual(config.collection_url, "https://dav.example.com/cal/")

    def test_malformed_collection_url_fails_the_sync(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            config_manager.update(
                {
                    "caldav": {"collection_url": "dav.example.com/cal/"},
                    "sync": {"retry_attempts": 3, "backoff_seconds": 0, "backoff_max_seconds": 0},
                }
            )
            state_store = StateStore(str(Path(temp_dir) / "state.db"))
            orchestrator = SyncOrchestrator(config_manager, state_store)
            result = orchestrator.save_event(None, NEW_EVENT)

            self.assertEqual(result.status, FAILED)
            self.assertEqual(result.attempts, 1)
            record = state_store.fetch_event(result.event_id)
            self.assertEqual(record.sync_status.state, FAILED)
            self.assertIn("dav.example.com/cal/", record.sync_status.last_error)
            rows = state_store.recent_sync_attempts(event_id=result.event_id)
            self.assertEqual([row["status"] for row in rows], [FAILED])


if __name__ == "__main__":
    unittest.main()
