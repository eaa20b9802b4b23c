"""iCalendar (RFC 5545) serialization of event records.

``encode`` writes the exact line layout that downstream mail and calendar
clients have been tested against, so it builds content lines by hand instead
of going through a generic serializer. Reading payloads back is split in two:
the salient fields needed for sequencing come from :mod:`icsmirror.ics_lines`,
full remote payloads are decoded with ``icalendar``.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

from icalendar import Calendar as ICalendar

from icsmirror.errors import InvalidArgument
from icsmirror.ics_lines import (
    extract_sequence,
    extract_uid,
    extract_x_properties,
    property_name,
    property_value,
    unfold_lines,
)
from icsmirror.models import (
    CANCEL,
    CREATE,
    OPERATIONS,
    UPDATE,
    Attendee,
    EventRecord,
    Organizer,
    Resource,
    parse_iso_datetime,
)

log = logging.getLogger(__name__)

__all__ = [
    "PRODID",
    "decode_event",
    "encode",
    "escape_text",
    "extract_sequence",
    "extract_uid",
    "extract_x_properties",
    "fold_line",
    "format_ics_date",
    "format_ics_day",
    "next_sequence",
]

PRODID = "-//CalDAV Client//NONSGML v1.0//EN"
CRLF = "\r\n"
DEFAULT_PARTSTAT = "NEEDS-ACTION"
FOLD_LIMIT = 75

METHODS = {
    CREATE: "PUBLISH",
    UPDATE: "REQUEST",
    CANCEL: "CANCEL",
}


def escape_text(value: Any) -> str:
    text = "" if value is None else str(value)
    text = text.replace("\\", "\\\\")
    text = text.replace(";", "\\;").replace(",", "\\,")
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return text.replace("\n", "\\n")


def _require_datetime(value: datetime | str | None) -> datetime:
    if value is None or value == "":
        raise InvalidArgument("date is required")
    try:
        parsed = parse_iso_datetime(value) if isinstance(value, (str, datetime)) else None
    except ValueError as exc:
        raise InvalidArgument(f"invalid date: {value!r}") from exc
    if parsed is None:
        raise InvalidArgument(f"invalid date: {value!r}")
    return parsed


def format_ics_date(value: datetime | str | None) -> str:
    """Format as UTC ``YYYYMMDDTHHMMSSZ``; invalid or absent values raise InvalidArgument."""
    return _require_datetime(value).astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def format_ics_day(value: datetime | str | None) -> str:
    """Format the calendar day of ``value`` as ``YYYYMMDD``, without shifting it to UTC."""
    return _require_datetime(value).strftime("%Y%m%d")


def fold_line(line: str) -> str:
    """Fold a content line into chunks of at most 75 octets.

    Continuation chunks start with a single space, which counts towards
    their 75 octets. Multi-byte characters are never split.
    """
    if len(line.encode("utf-8")) <= FOLD_LIMIT:
        return line
    chunks: list[str] = []
    current = ""
    size = 0
    limit = FOLD_LIMIT
    for char in line:
        width = len(char.encode("utf-8"))
        if size + width > limit:
            chunks.append(current)
            current = ""
            size = 0
            limit = FOLD_LIMIT - 1
        current += char
        size += width
    chunks.append(current)
    return (CRLF + " ").join(chunks)


def _date_lines(event: EventRecord) -> list[str]:
    if not event.all_day:
        return [f"DTSTART:{format_ics_date(event.start)}", f"DTEND:{format_ics_date(event.end)}"]
    start = _require_datetime(event.start)
    end = _require_datetime(event.end)
    # DTEND of an all-day event is exclusive.
    end_day = end.date() if end.date() > start.date() else start.date() + timedelta(days=1)
    return [
        f"DTSTART;VALUE=DATE:{format_ics_day(start)}",
        f"DTEND;VALUE=DATE:{end_day.strftime('%Y%m%d')}",
    ]


def _format_dtstamp(value: datetime | str | None) -> str:
    try:
        return format_ics_date(value)
    except InvalidArgument:
        return format_ics_date(datetime.now(timezone.utc))


def next_sequence(event: EventRecord, operation: str, prior_payload: str | None = None) -> int:
    if prior_payload:
        prior = extract_sequence(prior_payload)
        if prior is not None:
            return prior + 1
        log.warning("Prior payload for %s has no readable SEQUENCE, ignoring it", event.uid or event.id)
    if event.sequence:
        return int(event.sequence)
    return 1 if operation == CANCEL else 0


def _organizer_line(organizer: Organizer) -> str:
    if organizer.name:
        return f"ORGANIZER;CN={escape_text(organizer.name)}:mailto:{organizer.email}"
    return f"ORGANIZER:mailto:{organizer.email}"


def _attendee_line(attendee: Attendee) -> str:
    line = "ATTENDEE"
    if attendee.name:
        line += f";CN={escape_text(attendee.name)}"
    if attendee.role:
        line += f";ROLE={attendee.role}"
    line += f";PARTSTAT={attendee.status or DEFAULT_PARTSTAT}"
    return f"{line}:mailto:{attendee.email}"


def _resource_line(resource: Resource, email: str) -> str:
    line = "ATTENDEE;CUTYPE=RESOURCE"
    if resource.name:
        line += f";CN={escape_text(resource.name)}"
    resource_type = resource.sub_type or resource.type
    if resource_type:
        line += f";X-RESOURCE-TYPE={resource_type}"
    line += f";PARTSTAT={DEFAULT_PARTSTAT}"
    return f"{line}:mailto:{email}"


def _carried_x_properties(event: EventRecord, prior_payload: str | None) -> list[str]:
    carried = extract_x_properties(prior_payload) if prior_payload else []
    for line in event.x_properties:
        if line not in carried:
            carried.append(line)
    return carried


def encode(
    event: EventRecord,
    operation: str,
    prior_payload: str | None = None,
    dtstamp: datetime | str | None = None,
) -> str:
    """Serialize ``event`` as a VCALENDAR payload for ``operation``.

    The SEQUENCE is one above the one found in ``prior_payload``. DTSTAMP is
    ``dtstamp`` when given, else the record's ``updated_at``, else now; the
    output is byte-identical for identical arguments once DTSTAMP is pinned.
    """
    if operation not in OPERATIONS:
        raise InvalidArgument(f"unknown operation: {operation!r}")
    if not event.uid:
        raise InvalidArgument("event uid is required to encode")
    if event.organizer is None or not event.organizer.email:
        raise InvalidArgument("event organizer email is required to encode")

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        f"METHOD:{METHODS[operation]}",
        "BEGIN:VEVENT",
        f"UID:{event.uid}",
        f"SUMMARY:{escape_text(event.title)}",
        *_date_lines(event),
        f"DTSTAMP:{_format_dtstamp(dtstamp if dtstamp is not None else event.updated_at)}",
        f"SEQUENCE:{next_sequence(event, operation, prior_payload)}",
    ]
    if operation == CANCEL:
        lines.append("STATUS:CANCELLED")
    lines.append(_organizer_line(event.organizer))
    if event.location:
        lines.append(f"LOCATION:{escape_text(event.location)}")
    if event.description:
        lines.append(f"DESCRIPTION:{escape_text(event.description)}")
    if event.recurrence_rule:
        lines.append(f"RRULE:{event.recurrence_rule}")
    for attendee in event.attendees:
        if not attendee.email:
            continue
        lines.append(_attendee_line(attendee))
    for resource in event.resources:
        email = resource.email or resource.admin_email
        if not email:
            continue
        lines.append(_resource_line(resource, email))
    lines.extend(_carried_x_properties(event, prior_payload))
    lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")
    return CRLF.join(fold_line(line) for line in lines) + CRLF


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _mailto(address: Any) -> str:
    text = str(address or "").strip()
    if text.lower().startswith("mailto:"):
        return text[len("mailto:") :]
    return text


def _param(address: Any, name: str) -> str:
    params = getattr(address, "params", None) or {}
    value = params.get(name, "")
    if isinstance(value, list):
        value = ",".join(str(item) for item in value)
    return str(value or "")


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return None


def _vevent_value(raw_ics: str, name: str) -> str:
    # First value of the VEVENT's own property; VTIMEZONE and nested VALARM lines are skipped.
    depth = 0
    for line in unfold_lines(raw_ics):
        key = property_name(line)
        if key == "BEGIN":
            depth += 1 if depth or property_value(line).upper() == "VEVENT" else 0
        elif key == "END" and depth:
            depth -= 1
        elif depth == 1 and key == name:
            return property_value(line).strip()
    return ""


def decode_event(ics: str | bytes) -> EventRecord:
    """Parse the first VEVENT of a full payload into an EventRecord."""
    raw_ics = ics.decode("utf-8", errors="replace") if isinstance(ics, bytes) else str(ics)
    try:
        calendar_obj = ICalendar.from_ical(raw_ics)
    except ValueError as exc:
        raise InvalidArgument(f"unparsable iCalendar payload: {exc}") from exc
    vevent = next((c for c in calendar_obj.walk() if c.name == "VEVENT"), None)
    if vevent is None:
        raise InvalidArgument("VEVENT missing in calendar payload")

    raw_start = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
    all_day = isinstance(raw_start, date) and not isinstance(raw_start, datetime)
    start = _coerce_datetime(raw_start)
    end = _coerce_datetime(vevent.decoded("DTEND")) if vevent.get("DTEND") is not None else None
    if start is not None and end is None:
        end = start + (timedelta(days=1) if all_day else timedelta(hours=1))

    organizer = None
    if vevent.get("ORGANIZER") is not None:
        organizer_address = vevent.get("ORGANIZER")
        organizer = Organizer(email=_mailto(organizer_address), name=_param(organizer_address, "CN"))

    attendees: list[Attendee] = []
    resources: list[Resource] = []
    for address in _as_list(vevent.get("ATTENDEE")):
        if _param(address, "CUTYPE").upper() == "RESOURCE":
            resources.append(
                Resource(
                    email=_mailto(address),
                    name=_param(address, "CN"),
                    type=_param(address, "X-RESOURCE-TYPE"),
                )
            )
            continue
        attendees.append(
            Attendee(
                email=_mailto(address),
                name=_param(address, "CN"),
                role=_param(address, "ROLE"),
                status=_param(address, "PARTSTAT"),
            )
        )

    return EventRecord(
        uid=str(vevent.get("UID", "")).strip(),
        title=str(vevent.get("SUMMARY", "")),
        description=str(vevent.get("DESCRIPTION", "")),
        location=str(vevent.get("LOCATION", "")),
        start=start,
        end=end,
        all_day=all_day,
        recurrence_rule=_vevent_value(raw_ics, "RRULE"),
        organizer=organizer,
        attendees=attendees,
        resources=resources,
        sequence=extract_sequence(raw_ics) or 0,
        x_properties=extract_x_properties(raw_ics),
        raw_ics=raw_ics,
        active=str(vevent.get("STATUS", "")).upper() != "CANCELLED",
    )
