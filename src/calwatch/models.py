"""Domain models shared by the channel, reconciliation and renewal layers.

Subscriptions and channels are persisted by the store; event snapshots are
transient views of Google Calendar event payloads, consumed once per
reconciliation cycle and never stored.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, tzinfo
from enum import StrEnum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionKind(StrEnum):
    """What a subscriber wants to receive for a calendar."""

    reminder = "reminder"
    invite = "invite"


class EventStatus(StrEnum):
    """Event lifecycle states as reported by the provider."""

    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"


class AttendeeResponseStatus(StrEnum):
    """RSVP response status for a calendar event attendee."""

    needs_action = "needsAction"
    declined = "declined"
    tentative = "tentative"
    accepted = "accepted"


class StopResult(StrEnum):
    """Result of asking the provider to stop a watch channel.

    Failures are raised as ``GatewayRequestError``; ``already_absent`` is the
    desired end state reached by someone else and is handled like ``stopped``.
    """

    stopped = "stopped"
    already_absent = "already_absent"


class ReconcileOutcome(StrEnum):
    """How a single inbound notification was handled."""

    processed = "processed"
    ignored_sync = "ignored_sync"
    ignored_unknown_channel = "ignored_unknown_channel"
    cursor_expired = "cursor_expired"


class Subscription(BaseModel):
    """A subscriber's request for reminders or invite prompts on one calendar."""

    model_config = ConfigDict(frozen=True)

    account_id: str = Field(min_length=1)
    calendar_id: str = Field(min_length=1)
    kind: SubscriptionKind
    target: str = Field(min_length=1)


class Channel(BaseModel):
    """One active watch registration with the calendar provider."""

    channel_id: str
    account_id: str
    calendar_id: str
    resource_id: str
    expiry: datetime
    next_sync_token: str

    @field_validator("expiry")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class WatchRegistration(BaseModel):
    """Provider response to a watch request."""

    resource_id: str
    expiry: datetime

    @classmethod
    def from_google(cls, payload: dict[str, Any]) -> WatchRegistration:
        resource_id = payload.get("resourceId")
        if not isinstance(resource_id, str) or not resource_id.strip():
            raise ValueError("Google watch response is missing a resourceId")
        # Google reports expiration as a millisecond Unix timestamp string.
        expiration_ms = int(payload.get("expiration") or 0)
        return cls(
            resource_id=resource_id.strip(),
            expiry=datetime.fromtimestamp(expiration_ms / 1000, UTC),
        )


class Attendee(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str | None = None
    response_status: AttendeeResponseStatus = AttendeeResponseStatus.needs_action
    self_: bool = Field(default=False, alias="self")
    organizer: bool = False


class EventSnapshot(BaseModel):
    """The provider's representation of a calendar event at a point in time."""

    event_id: str
    status: EventStatus = EventStatus.confirmed
    summary: str | None = None
    start: dict[str, Any] = Field(default_factory=dict)
    end: dict[str, Any] = Field(default_factory=dict)
    recurring_event_id: str | None = None
    # None when the payload carries no attendee list at all.
    attendees: list[Attendee] | None = None
    html_link: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.cancelled

    @property
    def is_recurring_instance(self) -> bool:
        """True for instances of a series other than the series itself."""
        return bool(self.recurring_event_id) and self.recurring_event_id != self.event_id

    @classmethod
    def from_google(cls, payload: dict[str, Any]) -> EventSnapshot:
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise ValueError("Google Calendar event payload is missing a non-empty id")

        status = EventStatus.confirmed
        status_raw = payload.get("status")
        if isinstance(status_raw, str):
            try:
                status = EventStatus(status_raw.strip().lower())
            except ValueError:
                pass

        attendees: list[Attendee] | None = None
        attendees_raw = payload.get("attendees")
        if isinstance(attendees_raw, list):
            attendees = [
                _parse_attendee(entry) for entry in attendees_raw if isinstance(entry, dict)
            ]

        recurring_raw = payload.get("recurringEventId")
        return cls(
            event_id=event_id.strip(),
            status=status,
            summary=_optional_text(payload.get("summary")),
            start=payload.get("start") if isinstance(payload.get("start"), dict) else {},
            end=payload.get("end") if isinstance(payload.get("end"), dict) else {},
            recurring_event_id=_optional_text(recurring_raw),
            attendees=attendees,
            html_link=_optional_text(payload.get("htmlLink")),
        )


def _parse_attendee(entry: dict[str, Any]) -> Attendee:
    response_status = AttendeeResponseStatus.needs_action
    response_raw = entry.get("responseStatus")
    if isinstance(response_raw, str):
        try:
            response_status = AttendeeResponseStatus(response_raw.strip())
        except ValueError:
            pass
    return Attendee(
        email=_optional_text(entry.get("email")),
        response_status=response_status,
        self_=entry.get("self") is True,
        organizer=entry.get("organizer") is True,
    )


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _coerce_zoneinfo(timezone: Any) -> ZoneInfo | tzinfo:
    if not isinstance(timezone, str) or not timezone.strip():
        return UTC
    try:
        return ZoneInfo(timezone.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _parse_rfc3339(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_boundary(payload: dict[str, Any]) -> tuple[datetime, bool]:
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_rfc3339(date_time), False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        tz = _coerce_zoneinfo(payload.get("timeZone"))
        return datetime(parsed.year, parsed.month, parsed.day, tzinfo=tz), True

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def parse_event_times(
    start: dict[str, Any], end: dict[str, Any]
) -> tuple[datetime, datetime, bool]:
    """Return ``(start, end, is_all_day)`` for an event's time boundaries.

    All-day events carry ``date`` values on both boundaries; these resolve to
    midnight in the boundary's time zone.
    """
    start_at, start_all_day = _parse_boundary(start)
    end_at, end_all_day = _parse_boundary(end)
    if start_all_day != end_all_day:
        raise ValueError("Google Calendar event mixes all-day and timed boundaries")
    return start_at, end_at, start_all_day
