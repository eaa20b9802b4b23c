from __future__ import annotations

from dataclasses import asdict
from typing import Any, Mapping

from icsmirror.errors import IncompleteRecord, InvalidArgument
from icsmirror.models import (
    Attendee,
    EventRecord,
    Organizer,
    Resource,
    parse_iso_datetime,
    serialize_datetime,
)

TEXT_FIELDS = ("title", "description", "location")
DATETIME_FIELDS = ("start", "end")
COLLECTION_FIELDS = ("attendees", "resources")
REQUIRED_FIELDS = ("title", "start", "end", "calendar_id", "organizer")
# Owned by the stored record or computed downstream; never taken from a request.
IGNORED_FIELDS = frozenset({"id", "uid", "sequence", "x_properties", "raw_ics", "active", "sync_status"})
PATCH_FIELDS = (
    "title",
    "start",
    "end",
    "all_day",
    "recurrence_rule",
    "location",
    "description",
    "calendar_id",
    "organizer",
    "attendees",
    "resources",
)
_TRUE_FLAGS = frozenset({"1", "true", "yes", "on"})
_FALSE_FLAGS = frozenset({"", "0", "false", "no", "off"})


def _parse_datetime(field: str, value: Any) -> Any:
    try:
        return parse_iso_datetime(value)
    except (TypeError, ValueError) as exc:
        raise InvalidArgument(f"{field} is not a valid datetime: {value!r}") from exc


def _parse_flag(field: str, value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return bool(value)
    if isinstance(value, int):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_FLAGS:
        return True
    if text in _FALSE_FLAGS:
        return False
    raise InvalidArgument(f"{field} must be a boolean: {value!r}")


def _parse_recurrence_rule(value: Any) -> str:
    rule = "" if value is None else str(value).strip()
    if rule.upper().startswith("RRULE:"):
        rule = rule[len("RRULE:") :]
    if "\r" in rule or "\n" in rule:
        raise InvalidArgument("recurrence_rule must be a single RRULE value")
    return rule


def _parse_calendar_id(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidArgument(f"calendar_id must be an integer: {value!r}") from exc


def _parse_collection(field: str, value: Any) -> list[Any]:
    if not isinstance(value, (list, tuple)):
        raise InvalidArgument(f"{field} must be a list")
    item_type = Attendee if field == "attendees" else Resource
    return [item_type.from_dict(item) for item in value]


def merge(stored: EventRecord | None, incoming: Mapping[str, Any]) -> EventRecord:
    """Complete a partial update against the last stored record.

    Absent keys keep the stored value. For ``attendees`` and ``resources`` an
    explicit empty list clears the collection, a non-empty list replaces it
    wholesale and ``None`` counts as absent.
    """
    merged = stored.clone() if stored is not None else EventRecord()
    changes = {key: value for key, value in incoming.items() if key not in IGNORED_FIELDS}

    for field in TEXT_FIELDS:
        if field in changes:
            value = changes[field]
            setattr(merged, field, "" if value is None else str(value))

    for field in DATETIME_FIELDS:
        if field in changes:
            setattr(merged, field, _parse_datetime(field, changes[field]))

    if "recurrence_rule" in changes:
        merged.recurrence_rule = _parse_recurrence_rule(changes["recurrence_rule"])

    if "all_day" in changes:
        merged.all_day = _parse_flag("all_day", changes["all_day"])

    if "calendar_id" in changes:
        merged.calendar_id = _parse_calendar_id(changes["calendar_id"])

    if "organizer" in changes:
        organizer = changes["organizer"]
        if organizer is not None and not isinstance(organizer, (Mapping, Organizer)):
            raise InvalidArgument("organizer must be an object with an email")
        merged.organizer = Organizer.from_dict(organizer)

    for field in COLLECTION_FIELDS:
        if changes.get(field) is not None:
            setattr(merged, field, _parse_collection(field, changes[field]))

    missing = [
        field
        for field in REQUIRED_FIELDS
        if getattr(merged, field) is None or getattr(merged, field) == "" or getattr(merged, field) == 0
    ]
    if missing:
        raise IncompleteRecord(missing)
    if merged.end < merged.start:
        raise InvalidArgument("end must not be earlier than start")
    return merged


def _patch_value(record: EventRecord, field: str) -> Any:
    value = getattr(record, field)
    if field in DATETIME_FIELDS:
        return serialize_datetime(value)
    if field == "organizer":
        return asdict(value) if value is not None else None
    if field in COLLECTION_FIELDS:
        return [asdict(item) for item in value]
    return value


def changed_fields(before: EventRecord | None, after: EventRecord) -> list[dict[str, Any]]:
    patches: list[dict[str, Any]] = []
    for field in PATCH_FIELDS:
        before_val = _patch_value(before, field) if before is not None else None
        after_val = _patch_value(after, field)
        if before_val != after_val:
            patches.append({"field": field, "before": before_val, "after": after_val})
    return patches
