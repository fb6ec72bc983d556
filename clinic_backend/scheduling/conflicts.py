"""Conflict checks for booking, rescheduling and transferring appointments.

Everything in this module is pure. Appointment arguments are any objects
exposing ``id``, ``appointment_id``, ``staff_id``, ``date``, ``time``,
``status`` and optionally ``duration_minutes`` (ORM rows work as-is).
Availability calendars are plain mappings::

    {"2024-03-04": {"enabled": True, "slots": [{"start": "09:00", "end": "12:00"}]}}

Malformed dates and times never match anything; nothing here raises on bad
data, it only classifies.
"""

import re
from calendar import monthrange
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Iterable, Mapping

from pydantic import BaseModel

DEFAULT_DURATION_MINUTES = 30
SLOT_INTERVAL_MINUTES = 30
MINUTES_PER_DAY = 24 * 60
CANCELLED_STATUS = 'cancelled'
RECURRING_FREQUENCIES = ('daily', 'weekly', 'biweekly', 'monthly')
TIME_PATTERN = re.compile(r'(\d{1,2}):(\d{2})(?::(\d{2}))?', re.ASCII)


class ConflictKind(str, Enum):
    NO_AVAILABILITY = 'no_availability'
    NO_SLOT = 'no_slot'
    DOUBLE_BOOKED = 'double_booked'


CONFLICT_REASONS = {
    ConflictKind.NO_AVAILABILITY: 'Therapist has no availability for this date',
    ConflictKind.NO_SLOT: 'Therapist has no available slot for this time',
    ConflictKind.DOUBLE_BOOKED: 'Therapist already has an appointment at this time',
}


class TransferConflict(BaseModel):
    appointment_id: str
    date: str
    time: str
    kind: ConflictKind
    reason: str

    @property
    def needs_new_slot(self) -> bool:
        return self.kind in (ConflictKind.NO_SLOT, ConflictKind.DOUBLE_BOOKED)


class TransferConflictReport(BaseModel):
    has_conflicts: bool
    conflicts: list[TransferConflict]


def time_to_minutes(value: Any) -> int | None:
    """Minutes since midnight for a ``time`` or an ``"HH:MM"`` string."""
    if isinstance(value, time):
        return value.hour * 60 + value.minute
    if not isinstance(value, str):
        return None

    match = TIME_PATTERN.fullmatch(value.strip())
    if match is None:
        return None

    hours, minutes, seconds = match.groups()
    if int(minutes) >= 60 or (seconds is not None and int(seconds) >= 60):
        return None
    total = int(hours) * 60 + int(minutes)
    # "24:00" is accepted as the end of a day range.
    if total > MINUTES_PER_DAY:
        return None
    return total


def minutes_to_time(minutes: int) -> str:
    return f'{minutes // 60:02d}:{minutes % 60:02d}'


def date_key(value: Any) -> str | None:
    """ISO ``YYYY-MM-DD`` key for a date, datetime or date string."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value.strip()).isoformat()
    except ValueError:
        return None


def _slot_field(slot: Any, name: str) -> Any:
    if isinstance(slot, Mapping):
        return slot.get(name)
    return getattr(slot, name, None)


def range_bounds(slot: Any) -> tuple[int, int] | None:
    start = time_to_minutes(_slot_field(slot, 'start'))
    end = time_to_minutes(_slot_field(slot, 'end'))
    if start is None or end is None or end <= start:
        return None
    return start, end


def slot_contains(slot: Any, minutes: int) -> bool:
    """Half-open membership: the start boundary is inside, the end is not."""
    bounds = range_bounds(slot)
    if bounds is None:
        return False
    return bounds[0] <= minutes < bounds[1]


def day_schedule(availability: Mapping[str, Any] | None, value: Any) -> Mapping[str, Any] | None:
    key = date_key(value)
    if key is None or not availability:
        return None
    return availability.get(key)


def is_day_enabled(schedule: Mapping[str, Any] | None) -> bool:
    return bool(schedule) and bool(schedule.get('enabled'))


def fits_within_availability(
    schedule: Mapping[str, Any] | None,
    appointment_time: Any,
    duration_minutes: int = DEFAULT_DURATION_MINUTES,
) -> bool:
    """True when the whole appointment window lies inside one declared range."""
    if not is_day_enabled(schedule):
        return False

    start = time_to_minutes(appointment_time)
    if start is None:
        return False
    end = start + (duration_minutes or DEFAULT_DURATION_MINUTES)

    for slot in schedule.get('slots') or []:
        bounds = range_bounds(slot)
        if bounds and bounds[0] <= start and end <= bounds[1]:
            return True
    return False


def _duration(appointment: Any) -> int:
    return getattr(appointment, 'duration_minutes', None) or DEFAULT_DURATION_MINUTES


def _window(appointment_date: Any, appointment_time: Any, duration: int) -> tuple[str, int, int] | None:
    key = date_key(appointment_date)
    start = time_to_minutes(appointment_time)
    if key is None or start is None:
        return None
    return key, start, start + duration


def _windows_overlap(first: tuple[str, int, int], second: tuple[str, int, int]) -> bool:
    return first[0] == second[0] and first[1] < second[2] and second[1] < first[2]


def appointments_overlap(
    first_date: Any,
    first_time: Any,
    first_duration: int,
    second_date: Any,
    second_time: Any,
    second_duration: int,
) -> bool:
    first = _window(first_date, first_time, first_duration or DEFAULT_DURATION_MINUTES)
    second = _window(second_date, second_time, second_duration or DEFAULT_DURATION_MINUTES)
    if first is None or second is None:
        return False
    return _windows_overlap(first, second)


def find_conflicting_appointments(
    existing_appointments: Iterable[Any],
    staff_id: Any,
    appointment_date: Any,
    appointment_time: Any,
    duration_minutes: int = DEFAULT_DURATION_MINUTES,
    exclude_id: Any = None,
) -> list[Any]:
    """Active appointments of ``staff_id`` whose window overlaps the given one."""
    window = _window(appointment_date, appointment_time, duration_minutes or DEFAULT_DURATION_MINUTES)
    if window is None:
        return []

    conflicting = []
    for appointment in existing_appointments:
        if appointment.status == CANCELLED_STATUS or appointment.staff_id != staff_id:
            continue
        if exclude_id is not None and appointment.id == exclude_id:
            continue
        other = _window(appointment.date, appointment.time, _duration(appointment))
        if other is not None and _windows_overlap(window, other):
            conflicting.append(appointment)
    return conflicting


def _conflict(candidate: Any, kind: ConflictKind) -> TransferConflict:
    minutes = time_to_minutes(candidate.time)
    return TransferConflict(
        appointment_id=str(getattr(candidate, 'appointment_id', None) or candidate.id),
        date=date_key(candidate.date) or str(candidate.date),
        time=minutes_to_time(minutes) if minutes is not None else str(candidate.time),
        kind=kind,
        reason=CONFLICT_REASONS[kind],
    )


def check_transfer_conflict(
    candidate: Any,
    target_staff_id: Any,
    availability: Mapping[str, Any] | None,
    existing_appointments: Iterable[Any],
    occupied: Iterable[tuple[str, int, int]] = (),
) -> TransferConflict | None:
    """Classify moving ``candidate`` onto ``target_staff_id``; ``None`` means safe.

    ``occupied`` holds ``(date_key, start, end)`` windows already claimed by
    other moves in the same batch.
    """
    schedule = day_schedule(availability, candidate.date)
    if not is_day_enabled(schedule):
        return _conflict(candidate, ConflictKind.NO_AVAILABILITY)

    minutes = time_to_minutes(candidate.time)
    if minutes is None or not any(slot_contains(slot, minutes) for slot in schedule.get('slots') or []):
        return _conflict(candidate, ConflictKind.NO_SLOT)

    duration = _duration(candidate)
    clashes = find_conflicting_appointments(
        existing_appointments,
        target_staff_id,
        candidate.date,
        candidate.time,
        duration,
        exclude_id=candidate.id,
    )
    window = _window(candidate.date, candidate.time, duration)
    if clashes or any(_windows_overlap(window, claimed) for claimed in occupied):
        return _conflict(candidate, ConflictKind.DOUBLE_BOOKED)

    return None


def check_transfer_conflicts(
    candidates: Iterable[Any],
    target_staff_id: Any,
    availability: Mapping[str, Any] | None,
    existing_appointments: Iterable[Any],
) -> TransferConflictReport:
    existing = list(existing_appointments)
    occupied: list[tuple[str, int, int]] = []
    conflicts: list[TransferConflict] = []

    for candidate in candidates:
        conflict = check_transfer_conflict(candidate, target_staff_id, availability, existing, occupied)
        if conflict is not None:
            conflicts.append(conflict)
            continue
        occupied.append(_window(candidate.date, candidate.time, _duration(candidate)))

    return TransferConflictReport(has_conflicts=bool(conflicts), conflicts=conflicts)


def _booked_window(booked: Any) -> tuple[int, int] | None:
    if isinstance(booked, tuple):
        booked_time, duration = booked
    else:
        booked_time, duration = booked, None
    start = time_to_minutes(booked_time)
    if start is None:
        return None
    return start, start + (duration or DEFAULT_DURATION_MINUTES)


def available_slot_times(
    schedule: Mapping[str, Any] | None,
    booked: Iterable[Any] = (),
    interval_minutes: int = SLOT_INTERVAL_MINUTES,
    duration_minutes: int = DEFAULT_DURATION_MINUTES,
) -> list[str]:
    """Start times offered as replacements, snapped to ``interval_minutes``.

    ``booked`` holds start times or ``(time, duration_minutes)`` pairs. A start
    is skipped when ``[start, start + duration_minutes)`` overlaps any of them.
    """
    if not is_day_enabled(schedule):
        return []

    windows = [window for window in map(_booked_window, booked) if window is not None]
    duration = duration_minutes or DEFAULT_DURATION_MINUTES
    offered: set[int] = set()

    for slot in schedule.get('slots') or []:
        bounds = range_bounds(slot)
        if bounds is None:
            continue
        current, end = bounds
        if current % interval_minutes:
            current += interval_minutes - current % interval_minutes

        while current < end:
            if not any(current < taken_end and taken_start < current + duration for taken_start, taken_end in windows):
                offered.add(current)
            current += interval_minutes

    return [minutes_to_time(minutes) for minutes in sorted(offered)]


def _copy_calendar(availability: Mapping[str, Any] | None) -> dict[str, dict]:
    copied = {}
    for key, schedule in (availability or {}).items():
        copied[key] = {
            'enabled': bool(schedule.get('enabled')),
            'slots': [
                {'start': _slot_field(slot, 'start'), 'end': _slot_field(slot, 'end')}
                for slot in schedule.get('slots') or []
            ],
        }
    return copied


def _slot_sort_key(slot: Mapping[str, Any]) -> tuple[int, int]:
    start = time_to_minutes(slot.get('start'))
    return (0, start) if start is not None else (1, 0)


def merge_transfer_slots(
    availability: Mapping[str, Any] | None,
    placements: Iterable[tuple[Any, Any]],
    duration_minutes: int = SLOT_INTERVAL_MINUTES,
) -> dict[str, dict]:
    """Return a new calendar declaring a range for every ``(date, time)`` placement."""
    merged = _copy_calendar(availability)
    new_ranges: dict[str, list[dict]] = {}

    for placement_date, placement_time in placements:
        key = date_key(placement_date)
        start = time_to_minutes(placement_time)
        if key is None or start is None:
            continue
        end = min(start + duration_minutes, MINUTES_PER_DAY)
        new_ranges.setdefault(key, []).append({'start': minutes_to_time(start), 'end': minutes_to_time(end)})

    for key, ranges in new_ranges.items():
        existing = merged.get(key)
        slots = list(existing['slots']) if existing and existing['enabled'] else []
        for new_range in ranges:
            if new_range not in slots:
                slots.append(new_range)
        slots.sort(key=_slot_sort_key)
        merged[key] = {'enabled': True, 'slots': slots}

    return merged


def _add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(start.day, monthrange(year, month)[1]))


def generate_recurring_dates(start: date, frequency: str, count: int) -> list[date]:
    if frequency not in RECURRING_FREQUENCIES:
        raise ValueError(f'Unsupported frequency: {frequency}')

    dates = []
    for index in range(max(count, 0)):
        if frequency == 'daily':
            dates.append(start + timedelta(days=index))
        elif frequency == 'weekly':
            dates.append(start + timedelta(weeks=index))
        elif frequency == 'biweekly':
            dates.append(start + timedelta(weeks=2 * index))
        else:
            dates.append(_add_months(start, index))
    return dates
