from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

DEFAULT_UID_DOMAIN = "caldavclient.local"
DEFAULT_BOUNDED_CAPACITY = 100

CREATE = "CREATE"
UPDATE = "UPDATE"
CANCEL = "CANCEL"
OPERATIONS = (CREATE, UPDATE, CANCEL)

PENDING = "PENDING"
ENCODING = "ENCODING"
SENDING = "SENDING"
ACKNOWLEDGED = "ACKNOWLEDGED"
FAILED = "FAILED"
TERMINAL_STATES = frozenset({ACKNOWLEDGED, FAILED})


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if not isinstance(value, str):
        raise TypeError(f"expected an ISO 8601 string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass
class Organizer:
    email: str
    name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | "Organizer" | None) -> "Organizer | None":
        if data is None:
            return None
        if isinstance(data, Organizer):
            return Organizer(email=data.email, name=data.name)
        email = _text(data.get("email")).strip()
        if not email:
            return None
        return cls(email=email, name=_text(data.get("name")).strip())


@dataclass
class Attendee:
    email: str
    name: str = ""
    role: str = ""
    status: str = ""
    id: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | "Attendee") -> "Attendee":
        if isinstance(data, Attendee):
            return Attendee(**asdict(data))
        return cls(
            email=_text(data.get("email")).strip(),
            name=_text(data.get("name")).strip(),
            role=_text(data.get("role")).strip(),
            status=_text(data.get("status")).strip(),
            id=data.get("id"),
        )


@dataclass
class Resource:
    email: str = ""
    name: str = ""
    type: str = ""
    sub_type: str = ""
    admin_email: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | "Resource") -> "Resource":
        if isinstance(data, Resource):
            return Resource(**asdict(data))
        return cls(
            email=_text(data.get("email")).strip(),
            name=_text(data.get("name")).strip(),
            type=_text(data.get("type")).strip(),
            sub_type=_text(data.get("sub_type", data.get("subType"))).strip(),
            admin_email=_text(data.get("admin_email", data.get("adminEmail"))).strip(),
        )


@dataclass
class SyncStatus:
    state: str = ""
    operation: str = ""
    last_sent_at: datetime | None = None
    last_error: str = ""
    last_attempted_ics: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_sent_at"] = serialize_datetime(self.last_sent_at)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncStatus":
        data = data or {}
        return cls(
            state=_text(data.get("state")),
            operation=_text(data.get("operation")),
            last_sent_at=parse_iso_datetime(data.get("last_sent_at")),
            last_error=_text(data.get("last_error")),
            last_attempted_ics=_text(data.get("last_attempted_ics")),
        )


@dataclass
class EventRecord:
    id: int | None = None
    uid: str = ""
    calendar_id: int | None = None
    title: str = ""
    description: str = ""
    location: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    recurrence_rule: str = ""
    organizer: Organizer | None = None
    attendees: list[Attendee] = field(default_factory=list)
    resources: list[Resource] = field(default_factory=list)
    sequence: int = 0
    x_properties: list[str] = field(default_factory=list)
    raw_ics: str = ""
    active: bool = True
    updated_at: datetime | None = None
    sync_status: SyncStatus = field(default_factory=SyncStatus)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        payload["sync_status"] = self.sync_status.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EventRecord":
        return cls(
            id=_optional_int(data.get("id")),
            uid=_text(data.get("uid")).strip(),
            calendar_id=_optional_int(data.get("calendar_id")),
            title=_text(data.get("title")),
            description=_text(data.get("description")),
            location=_text(data.get("location")),
            start=parse_iso_datetime(data.get("start")),
            end=parse_iso_datetime(data.get("end")),
            all_day=bool(data.get("all_day", False)),
            recurrence_rule=_text(data.get("recurrence_rule")).strip(),
            organizer=Organizer.from_dict(data.get("organizer")),
            attendees=[Attendee.from_dict(item) for item in data.get("attendees") or []],
            resources=[Resource.from_dict(item) for item in data.get("resources") or []],
            sequence=max(0, int(data.get("sequence") or 0)),
            x_properties=[str(line) for line in data.get("x_properties") or []],
            raw_ics=_text(data.get("raw_ics")),
            active=bool(data.get("active", True)),
            updated_at=parse_iso_datetime(data.get("updated_at")),
            sync_status=SyncStatus.from_dict(data.get("sync_status")),
        )

    def clone(self) -> "EventRecord":
        return EventRecord.from_dict(self.to_dict())

    def with_updates(self, **kwargs: Any) -> "EventRecord":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied


@dataclass
class CalDAVConfig:
    collection_url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: float = 30.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            collection_url=str(data.get("collection_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            timeout_seconds=max(1.0, float(data.get("timeout_seconds", 30.0))),
        )


@dataclass
class SyncConfig:
    retry_attempts: int = 3
    backoff_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            retry_attempts=max(1, int(data.get("retry_attempts", 3))),
            backoff_seconds=max(0.0, float(data.get("backoff_seconds", 1.0))),
            backoff_max_seconds=max(0.0, float(data.get("backoff_max_seconds", 30.0))),
        )


@dataclass
class UIDConfig:
    domain: str = DEFAULT_UID_DOMAIN
    bounded_capacity: int = DEFAULT_BOUNDED_CAPACITY
    bounded_path: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "UIDConfig":
        data = data or {}
        return cls(
            domain=str(data.get("domain", DEFAULT_UID_DOMAIN)).strip() or DEFAULT_UID_DOMAIN,
            bounded_capacity=max(1, int(data.get("bounded_capacity", DEFAULT_BOUNDED_CAPACITY))),
            bounded_path=str(data.get("bounded_path", "") or "").strip(),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    uid: UIDConfig = field(default_factory=UIDConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            sync=SyncConfig.from_dict(data.get("sync")),
            uid=UIDConfig.from_dict(data.get("uid")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    status: str
    message: str
    operation: str
    event_id: int | None
    uid: str
    sequence: int | None
    attempts: int
    duration_ms: int
    run_at: datetime = field(default_factory=utc_now)

    @property
    def ok(self) -> bool:
        return self.status == ACKNOWLEDGED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "operation": self.operation,
            "event_id": self.event_id,
            "uid": self.uid,
            "sequence": self.sequence,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
