"""
Basal Delivery Timeline
Reconstructs the basal insulin actually delivered during one local calendar
day from a Nightscout profile document and the treatments recorded around it
(profile switches, temp basals and combo/extended boluses).

Everything in this module is a pure function of its inputs: no network,
no clock reads, no printing.
"""

import json
import math
import numbers
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MINUTES_PER_DAY = 24 * 60
FETCH_LOOKBACK = timedelta(hours=24)
FETCH_LOOKAHEAD = timedelta(hours=1)
TEMP_SNAP_TOLERANCE = timedelta(seconds=65)

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
HHMM_RE = re.compile(r"^\s*(\d{1,2}):(\d{1,2})")
PERCENT_SUFFIX_RE = re.compile(r"\s*\(\s*\d+(?:\.\d+)?\s*%\s*\)\s*$")
PROFILE_SWITCH_RE = re.compile(r"profile switch", re.IGNORECASE)

LABEL_BASELINE = "baseline"
LABEL_TEMP_ABSOLUTE = "temp-absolute"
LABEL_TEMP_PERCENT = "temp-percent"
LABEL_TEMP_UNKNOWN = "temp-unknown"
LABEL_COMBO = "combo-relative"


class BasalComputationError(ValueError):
    """Base class for failures that abort the computation of a single day."""


class InvalidDateError(BasalComputationError):
    pass


class InvalidTimezoneError(BasalComputationError):
    pass


class ProfileStoreError(BasalComputationError):
    pass


class EmptyBaselineError(BasalComputationError):
    pass


class NoSegmentsProducedError(BasalComputationError):
    pass


@dataclass(frozen=True)
class DayWindow:
    day_start: datetime
    day_end: datetime
    fetch_start: datetime
    fetch_end: datetime


@dataclass(frozen=True)
class BasalStep:
    minute: int
    rate: float


@dataclass(frozen=True)
class ProfileStore:
    default_profile: str
    schedules: Mapping[str, tuple[BasalStep, ...]]
    timezone: Optional[str] = None


@dataclass(frozen=True)
class ProfileSwitch:
    timestamp: datetime
    profile: str
    percentage: float = 100.0
    schedule: Optional[tuple[BasalStep, ...]] = None


@dataclass(frozen=True)
class BaselineSegment:
    start: datetime
    end: datetime
    base_rate: float
    percent_multiplier: float = 1.0

    @property
    def rate(self) -> float:
        """Scheduled rate with the profile-switch percentage applied (U/h)."""
        return self.base_rate * self.percent_multiplier


@dataclass(frozen=True)
class TempBasalOverlay:
    start: datetime
    end: datetime
    absolute_rate: Optional[float] = None
    percent_delta: Optional[float] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class ComboBolusOverlay:
    start: datetime
    end: datetime
    additive_rate: float
    id: Optional[str] = None


@dataclass(frozen=True)
class Overlays:
    temps: tuple[TempBasalOverlay, ...] = ()
    combos: tuple[ComboBolusOverlay, ...] = ()


@dataclass(frozen=True)
class ResolvedSegment:
    start: datetime
    end: datetime
    rate: float
    total_units: float
    label: str

    @property
    def duration_hours(self) -> float:
        return _hours_between(self.start, self.end)


@dataclass(frozen=True)
class BasalDay:
    """Basal delivery reconstructed for one local calendar day."""

    date: str
    tz: str
    window: DayWindow
    segments: tuple[ResolvedSegment, ...]
    total_units: float
    counts: Mapping[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """JSON-ready representation with ISO-8601 UTC and local timestamps."""
        zone = load_zone(self.tz)
        return {
            'date': self.date,
            'tz': self.tz,
            'segments': [
                {
                    'start': to_iso_string(segment.start),
                    'end': to_iso_string(segment.end),
                    'start_local': format_local(segment.start, zone),
                    'end_local': format_local(segment.end, zone),
                    'rate_U_per_h': segment.rate,
                    'total_U': segment.total_units,
                    'label': segment.label,
                }
                for segment in self.segments
            ],
            'total_U': self.total_units,
            'counts': dict(self.counts),
            'window': {
                'day_start': to_iso_string(self.window.day_start),
                'day_end': to_iso_string(self.window.day_end),
                'fetch_start': to_iso_string(self.window.fetch_start),
                'fetch_end': to_iso_string(self.window.fetch_end),
            },
        }


def round4(value: float) -> float:
    """Round half away from zero to 4 decimal places.

    Works on the shortest decimal representation of the float so that e.g.
    1.00005 rounds up to 1.0001 instead of down because of binary noise.
    """
    return float(Decimal(repr(float(value))).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP))


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def _first_present(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if not _is_missing(value):
            return value
    return None


def _finite_number(value: Any) -> Optional[float]:
    """Return value as float if it is a real finite number (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _coerce_number(value: Any) -> Optional[float]:
    """Like _finite_number, but also accepts numeric strings."""
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    return _finite_number(value)


def _from_epoch_ms(ms: float) -> Optional[datetime]:
    try:
        return EPOCH + timedelta(milliseconds=ms)
    except OverflowError:
        return None


def _parse_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = date_parser.isoparse(value.strip())
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        # Nightscout stores UTC; treat naive stamps the same way
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0


def load_zone(timezone_name: str) -> ZoneInfo:
    """Load an IANA timezone, raising InvalidTimezoneError if unknown."""
    if not isinstance(timezone_name, str) or not timezone_name.strip():
        raise InvalidTimezoneError(f"Invalid time zone: {timezone_name!r}")
    try:
        return ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        raise InvalidTimezoneError(f"Invalid time zone: {timezone_name}") from e


def to_iso_string(dt: datetime) -> str:
    """Format an instant the way Nightscout expects it (UTC, milliseconds, Z)."""
    return dt.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def format_local(dt: datetime, zone: ZoneInfo) -> str:
    return dt.astimezone(zone).strftime("%Y-%m-%d %H:%M:%S")


def resolve_timestamp(record: Mapping[str, Any]) -> Optional[datetime]:
    """Resolve the best available timestamp of a treatment record.

    Precedence: ``mills`` (epoch ms), ``date`` (epoch ms, numeric strings
    accepted), then the ISO strings ``created_at`` and ``_created_at``.
    """
    # Epoch milliseconds are the most precise source when present
    mills = _finite_number(record.get('mills'))
    if mills is not None:
        return _from_epoch_ms(mills)

    date_ms = _coerce_number(record.get('date'))
    if date_ms is not None:
        return _from_epoch_ms(date_ms)

    for key in ('created_at', '_created_at'):
        parsed = _parse_iso(record.get(key))
        if parsed is not None:
            return parsed

    return None


def resolve_duration(record: Mapping[str, Any]) -> Optional[timedelta]:
    """Resolve a treatment duration, or None when missing or not positive.

    ``durationInMilliseconds`` wins; otherwise ``durationMinutes`` (or, when
    absent, ``duration``) is read as minutes and rounded half-up to the
    millisecond.
    """
    duration_ms = _coerce_number(record.get('durationInMilliseconds'))
    if duration_ms is None:
        minutes = _coerce_number(_first_present(record, 'durationMinutes', 'duration'))
        if minutes is not None:
            duration_ms = math.floor(minutes * 60_000 + 0.5)

    if duration_ms is None or duration_ms <= 0:
        return None
    return timedelta(milliseconds=duration_ms)


def _record_id(record: Mapping[str, Any]) -> Optional[str]:
    record_id = record.get('_id')
    return record_id if isinstance(record_id, str) else None


def _event_type(record: Mapping[str, Any]) -> str:
    event_type = record.get('eventType')
    return event_type.lower() if isinstance(event_type, str) else ''


def parse_local_date(date_str: str) -> date:
    """Parse a strict YYYY-MM-DD string into a calendar date.

    Raises:
        InvalidDateError: date_str is malformed or not a real calendar date
    """
    if not isinstance(date_str, str) or not DATE_RE.match(date_str):
        raise InvalidDateError(f"Invalid date format '{date_str}'; expected YYYY-MM-DD")
    try:
        local_date = datetime.strptime(date_str, "%Y-%m-%d").date()
    except ValueError as e:
        raise InvalidDateError(f"Invalid date '{date_str}'") from e
    if local_date.strftime("%Y-%m-%d") != date_str:
        raise InvalidDateError(f"Invalid date '{date_str}'")
    return local_date


def resolve_window(date_str: str, timezone_name: str) -> DayWindow:
    """Compute the UTC boundaries of a local calendar day.

    Args:
        date_str: Day in YYYY-MM-DD format
        timezone_name: IANA timezone (e.g., "Europe/Brussels")

    Returns:
        DayWindow where day_start/day_end are the local midnights of the day
        and the next day, and the fetch window is padded by 24h before and
        1h after so that temp basals and switches started earlier are seen.

    Raises:
        InvalidDateError: date_str is malformed or not a real calendar date
        InvalidTimezoneError: timezone_name is not a known IANA zone
    """
    local_date = parse_local_date(date_str)
    zone = load_zone(timezone_name)

    # Local midnights, so DST days come out as 23 or 25 hours
    day_start = datetime.combine(local_date, time(0), tzinfo=zone).astimezone(timezone.utc)
    next_date = local_date + timedelta(days=1)
    day_end = datetime.combine(next_date, time(0), tzinfo=zone).astimezone(timezone.utc)

    return DayWindow(
        day_start=day_start,
        day_end=day_end,
        fetch_start=day_start - FETCH_LOOKBACK,
        fetch_end=day_end + FETCH_LOOKAHEAD,
    )


def _parse_hhmm(value: Any) -> Optional[int]:
    if not isinstance(value, str):
        return None
    match = HHMM_RE.match(value)
    if not match:
        return None
    return int(match.group(1)) * 60 + int(match.group(2))


def _step_minute(step: Mapping[str, Any]) -> Optional[int]:
    minutes = _finite_number(step.get('minutes'))
    if minutes is not None:
        return math.floor(minutes)

    seconds = _finite_number(step.get('timeAsSeconds'))
    if seconds is not None:
        return math.floor(seconds / 60)

    return _parse_hhmm(step.get('start') or step.get('time'))


def parse_basal_schedule(profile: Mapping[str, Any]) -> tuple[BasalStep, ...]:
    """Parse the ``basal`` entry of one profile into a sorted schedule.

    Handles both the array format and a single value for the whole day.
    Steps whose time or rate cannot be parsed are dropped.
    """
    basal_data = profile.get('basal')
    if isinstance(basal_data, list):
        raw_steps = basal_data
    else:
        rate = _coerce_number(basal_data)
        raw_steps = [] if rate is None else [{'minutes': 0, 'value': rate}]

    steps = []
    for raw_step in raw_steps:
        if not isinstance(raw_step, Mapping):
            continue
        minute = _step_minute(raw_step)
        rate = _coerce_number(raw_step.get('value'))
        if minute is None or not 0 <= minute <= MINUTES_PER_DAY:
            continue
        if rate is None or rate < 0:
            continue
        steps.append(BasalStep(minute=minute, rate=rate))

    return tuple(sorted(steps, key=lambda s: s.minute))


def normalize_profile_store(raw_profile: Any) -> Optional[ProfileStore]:
    """Normalize a raw Nightscout profile document into named basal schedules.

    Args:
        raw_profile: Profile document, or the list returned by
                     /api/v1/profile.json (only the first document is used)

    Returns:
        ProfileStore, or None when the document is not usable at all.
        Profiles without any basal step are left out of the schedules.
    """
    if isinstance(raw_profile, list):
        if not raw_profile:
            return None
        raw_profile = raw_profile[0]
    if not isinstance(raw_profile, Mapping):
        return None

    default_profile = raw_profile.get('defaultProfile') or raw_profile.get('default')
    if not isinstance(default_profile, str) or not default_profile:
        default_profile = 'Default'

    # Older documents keep the profiles at the top level instead of under "store"
    store = raw_profile.get('store')
    if not isinstance(store, Mapping):
        store = raw_profile

    schedules = {}
    for name, profile in store.items():
        if not isinstance(profile, Mapping):
            continue
        schedule = parse_basal_schedule(profile)
        if schedule:
            schedules[str(name)] = schedule

    profile_tz = None
    default_entry = store.get(default_profile)
    if isinstance(default_entry, Mapping):
        candidate = default_entry.get('timezone')
        if isinstance(candidate, str) and candidate.strip():
            profile_tz = candidate.strip()

    return ProfileStore(default_profile=default_profile, schedules=schedules, timezone=profile_tz)


def is_profile_switch(record: Mapping[str, Any]) -> bool:
    return bool(PROFILE_SWITCH_RE.search(_event_type(record)))


def _load_inline_profile(value: Any) -> Optional[Mapping[str, Any]]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    return value if isinstance(value, Mapping) else None


def parse_profile_switch(record: Mapping[str, Any]) -> Optional[ProfileSwitch]:
    """Turn a Profile Switch treatment into a ProfileSwitch.

    Returns None when the record has no usable timestamp or profile name.
    """
    timestamp = resolve_timestamp(record)
    if timestamp is None:
        return None

    inline_profile = _load_inline_profile(record.get('profileJson'))

    candidates = [record.get('profile')]
    if inline_profile is not None:
        candidates += [inline_profile.get('defaultProfile'), inline_profile.get('name')]
    name = next((c for c in candidates if isinstance(c, str) and c.strip()), None)
    if name is None:
        return None
    # AAPS appends the percentage to the name, e.g. "Work (120%)"
    name = PERCENT_SUFFIX_RE.sub('', name).strip()
    if not name:
        return None

    percentage = 100.0
    for key in ('percentage', 'percent', 'profilePercentage'):
        value = _finite_number(record.get(key))
        if value is not None:
            percentage = value
            break

    schedule = parse_basal_schedule(inline_profile) if inline_profile is not None else ()

    return ProfileSwitch(
        timestamp=timestamp,
        profile=name,
        percentage=percentage,
        schedule=schedule or None,
    )


def _wall_clock_instant(zone: ZoneInfo, local_midnight: datetime, minutes: int) -> datetime:
    """UTC instant at which the local wall clock reads midnight + minutes.

    Wall times skipped by a DST gap resolve to the transition itself, the
    first instant the clock reads at least that time.
    """
    wall = local_midnight + timedelta(minutes=minutes)
    instant = wall.astimezone(timezone.utc)
    naive_wall = wall.replace(tzinfo=None)
    if instant.astimezone(zone).replace(tzinfo=None) == naive_wall:
        return instant

    # Skipped wall time: fold=1 applies the post-gap offset, which lands before
    # the transition. Transitions fall on whole minutes.
    candidate = wall.replace(fold=1).astimezone(timezone.utc)
    while candidate < instant and candidate.astimezone(zone).replace(tzinfo=None) < naive_wall:
        candidate += timedelta(minutes=1)
    return candidate


def _project_schedule(
    zone: ZoneInfo,
    start: datetime,
    end: datetime,
    steps: Sequence[BasalStep],
) -> Iterator[tuple[datetime, datetime, BasalStep]]:
    """Project a day-relative schedule onto [start, end).

    Steps are anchored at the local midnight of start, never at start itself.
    """
    local_midnight = datetime.combine(start.astimezone(zone).date(), time(0), tzinfo=zone)

    steps = list(steps)
    if steps[0].minute > 0:
        # Schedule wraps: the last rate runs from midnight to the first step
        steps.insert(0, BasalStep(minute=0, rate=steps[-1].rate))

    # Steps inside a DST gap collapse onto the transition, so a step there
    # may end up with an empty span
    bounds = [_wall_clock_instant(zone, local_midnight, step.minute) for step in steps]
    bounds.append(_wall_clock_instant(zone, local_midnight, MINUTES_PER_DAY))

    for step, step_start, step_end in zip(steps, bounds, bounds[1:]):
        a = max(step_start, start)
        b = min(step_end, end)
        if a < b:
            yield a, b, step


def build_baseline(
    zone: str,
    day_start: datetime,
    day_end: datetime,
    schedules: Mapping[str, Sequence[BasalStep]],
    default_profile: str,
    profile_switches: Iterable[ProfileSwitch],
) -> list[BaselineSegment]:
    """Build the scheduled (profile) basal segments for one day.

    Args:
        zone: IANA timezone the schedules are expressed in
        day_start: Local midnight of the day (UTC instant)
        day_end: Local midnight of the next day (UTC instant)
        schedules: Normalized basal schedules by profile name
        default_profile: Profile used when no switch precedes the day
        profile_switches: Parsed switch events, in fetch order

    Returns:
        Segments sorted by start, each carrying the schedule rate and the
        multiplier of the profile switch active at that time.

    Raises:
        EmptyBaselineError: no schedule could be resolved for any part of the day
    """
    tz = load_zone(zone)

    switches = sorted(
        (sw for sw in profile_switches if sw.timestamp <= day_end),
        key=lambda sw: sw.timestamp,
    )

    # Switches may carry their own schedule for profiles missing from the store
    known = dict(schedules)
    for sw in switches:
        if sw.schedule and sw.profile not in known:
            known[sw.profile] = sw.schedule

    # Profile and percentage active at the start of the day
    active = (default_profile, 100.0)
    for sw in switches:
        if sw.timestamp <= day_start and sw.profile in known:
            active = (sw.profile, max(0.0, sw.percentage))

    # Split the day at every switch that changes the active state
    intervals = []
    cursor = day_start
    for sw in switches:
        if sw.timestamp >= day_end:
            break
        if sw.timestamp < day_start or sw.profile not in known:
            continue
        state = (sw.profile, max(0.0, sw.percentage))
        if state == active:
            continue
        if cursor < sw.timestamp:
            intervals.append((cursor, sw.timestamp, active))
        active = state
        cursor = sw.timestamp
    intervals.append((cursor, day_end, active))

    baseline = []
    for start, end, (profile, percentage) in intervals:
        steps = known.get(profile)
        if not steps:
            continue
        multiplier = percentage / 100
        for a, b, step in _project_schedule(tz, start, end, steps):
            baseline.append(BaselineSegment(start=a, end=b, base_rate=step.rate,
                                            percent_multiplier=multiplier))

    baseline.sort(key=lambda s: (s.start, s.end))

    if not baseline:
        raise EmptyBaselineError(
            f"Baseline schedule is empty for the selected day (active profile '{default_profile}' "
            f"has no basal schedule); cannot compute basal."
        )
    return baseline


def _is_temp_basal_type(event_type: str) -> bool:
    return 'temp' in event_type and any(k in event_type for k in ('basal', 'target', 'rate'))


def _is_combo_type(event_type: str) -> bool:
    return 'combo' in event_type or 'extended' in event_type


def _non_negative(value: Optional[float]) -> Optional[float]:
    return value if value is not None and value >= 0 else None


def parse_temp_basal(record: Mapping[str, Any]) -> Optional[TempBasalOverlay]:
    start = resolve_timestamp(record)
    duration = resolve_duration(record)
    if start is None or duration is None:
        return None

    # Absolute rate wins over percent; "rate" is the older field name
    absolute = _non_negative(_finite_number(record.get('absolute')))
    if absolute is None:
        absolute = _non_negative(_finite_number(record.get('rate')))
    percent = _finite_number(record.get('percent'))

    return TempBasalOverlay(
        start=start,
        end=start + duration,
        absolute_rate=absolute,
        percent_delta=None if absolute is not None else percent,
        id=_record_id(record),
    )


def parse_combo_bolus(record: Mapping[str, Any]) -> Optional[ComboBolusOverlay]:
    start = resolve_timestamp(record)
    duration = resolve_duration(record)
    relative = _coerce_number(record.get('relative'))
    if start is None or duration is None or not relative:
        return None
    return ComboBolusOverlay(start=start, end=start + duration, additive_rate=relative,
                             id=_record_id(record))


def _merge_temps(previous: TempBasalOverlay, current: TempBasalOverlay) -> TempBasalOverlay:
    """Merge two temp basal records sharing a start; absolute beats percent."""
    absolute = previous.absolute_rate if previous.absolute_rate is not None else current.absolute_rate
    if absolute is not None:
        percent = None
    elif current.percent_delta is not None:
        percent = current.percent_delta
    else:
        percent = previous.percent_delta

    return TempBasalOverlay(
        start=min(previous.start, current.start),
        end=max(previous.end, current.end),
        absolute_rate=absolute,
        percent_delta=percent,
        id=previous.id or current.id,
    )


def snap_temp_gaps(temps: Sequence[TempBasalOverlay],
                   tolerance: timedelta = TEMP_SNAP_TOLERANCE) -> list[TempBasalOverlay]:
    """Close small gaps between consecutive temp basals.

    When the next temp starts at most `tolerance` after the previous one
    ended, its start is pulled back to the previous end. Overlapping or
    touching temps are left alone.
    """
    snapped = list(temps)
    for i in range(1, len(snapped)):
        gap = snapped[i].start - snapped[i - 1].end
        if timedelta(0) < gap <= tolerance:
            snapped[i] = replace(snapped[i], start=snapped[i - 1].end)
    return snapped


def parse_overlays(treatments: Iterable[Mapping[str, Any]]) -> Overlays:
    """Extract temp basal and combo bolus overlays from treatments.

    Args:
        treatments: Raw Nightscout treatment records

    Returns:
        Overlays with temps (deduplicated by start, snapped) and combos,
        both sorted by start. Malformed records are skipped.
    """
    temps_by_start: dict[datetime, TempBasalOverlay] = {}
    combos = []

    for record in treatments:
        if not isinstance(record, Mapping):
            continue
        event_type = _event_type(record)

        if _is_temp_basal_type(event_type):
            temp = parse_temp_basal(record)
            if temp is None:
                continue
            # Uploaders sometimes post the same temp twice
            previous = temps_by_start.get(temp.start)
            temps_by_start[temp.start] = temp if previous is None else _merge_temps(previous, temp)
            continue

        if _is_combo_type(event_type):
            combo = parse_combo_bolus(record)
            if combo is not None:
                combos.append(combo)

    temps = sorted(temps_by_start.values(), key=lambda t: t.start)
    combos.sort(key=lambda c: c.start)

    return Overlays(temps=tuple(snap_temp_gaps(temps)), combos=tuple(combos))


def baseline_rate_at(baseline: Sequence[BaselineSegment], at: datetime) -> float:
    """Scheduled rate at `at`, falling back to the nearest segment outside coverage."""
    for segment in reversed(baseline):
        if segment.start <= at < segment.end:
            return segment.rate
    for segment in baseline:
        if at < segment.start:
            return segment.rate
    return baseline[-1].rate if baseline else 0.0


def active_temp_at(temps: Sequence[TempBasalOverlay], at: datetime) -> Optional[TempBasalOverlay]:
    # Last one in start order wins when temps overlap
    candidate = None
    for temp in temps:
        if temp.start <= at < temp.end:
            candidate = temp
    return candidate


def combo_rate_at(combos: Sequence[ComboBolusOverlay], at: datetime) -> float:
    rate = 0.0
    for combo in combos:
        if combo.start > at:
            break
        if at < combo.end:
            rate = combo.additive_rate
    return rate


def _cut_points(day_start: datetime, day_end: datetime,
                baseline: Sequence[BaselineSegment], overlays: Overlays) -> list[datetime]:
    points = {day_start, day_end}
    for segment in baseline:
        points.update((segment.start, segment.end))
    for overlay in (*overlays.temps, *overlays.combos):
        a = max(day_start, overlay.start)
        b = min(day_end, overlay.end)
        if a < b:
            points.update((a, b))
    return sorted(p for p in points if day_start <= p <= day_end)


def resolve_cut_segments(
    day_start: datetime,
    day_end: datetime,
    baseline: Sequence[BaselineSegment],
    overlays: Overlays,
) -> list[ResolvedSegment]:
    """Resolve the effective rate between every pair of consecutive cut points.

    Priority: absolute temp, percent temp, unknown temp (baseline rate),
    baseline. A combo bolus adds its rate on top unless an absolute temp of
    exactly zero (a suspend) is active. Percent temps do not cap combos.
    """
    times = _cut_points(day_start, day_end, baseline, overlays)

    segments = []
    for a, b in zip(times, times[1:]):
        base = baseline_rate_at(baseline, a)
        rate, label = base, LABEL_BASELINE

        temp = active_temp_at(overlays.temps, a)
        if temp is not None:
            if temp.absolute_rate is not None:
                rate, label = temp.absolute_rate, LABEL_TEMP_ABSOLUTE
            elif temp.percent_delta is not None:
                rate = max(0.0, base * (100 + temp.percent_delta) / 100)
                label = LABEL_TEMP_PERCENT
            else:
                label = LABEL_TEMP_UNKNOWN

        # A suspend stops extended boluses too
        suspended = temp is not None and temp.absolute_rate == 0
        combo = 0.0 if suspended else combo_rate_at(overlays.combos, a)
        if combo:
            rate = max(0.0, rate + combo)
            label = LABEL_COMBO if label == LABEL_BASELINE else f"{label}+combo"

        segments.append(ResolvedSegment(
            start=a,
            end=b,
            rate=round4(rate),
            total_units=round4(rate * _hours_between(a, b)),
            label=label,
        ))

    return segments


def coalesce_segments(segments: Iterable[ResolvedSegment]) -> list[ResolvedSegment]:
    """Merge adjacent segments sharing rounded rate and label."""
    merged: list[ResolvedSegment] = []
    for segment in segments:
        last = merged[-1] if merged else None
        if (last is not None and last.rate == segment.rate and last.label == segment.label
                and last.end == segment.start):
            merged[-1] = replace(last, end=segment.end,
                                 total_units=round4(last.total_units + segment.total_units))
        else:
            merged.append(segment)
    return merged


def assemble_timeline(
    day_start: datetime,
    day_end: datetime,
    baseline: Sequence[BaselineSegment],
    overlays: Overlays,
) -> list[ResolvedSegment]:
    """Compose baseline and overlays into the final, coalesced segment list.

    Raises:
        NoSegmentsProducedError: nothing could be produced for the day
    """
    segments = coalesce_segments(resolve_cut_segments(day_start, day_end, baseline, overlays))
    if not segments:
        raise NoSegmentsProducedError("No segments were produced.")
    return segments


def compute_basal_segments(
    date_str: str,
    timezone_name: str,
    profile_document: Any,
    treatments: Iterable[Mapping[str, Any]],
    extra_profile_switches: Iterable[Mapping[str, Any]] = (),
) -> BasalDay:
    """Compute the basal delivery of one local day from already fetched data.

    Args:
        date_str: Day in YYYY-MM-DD format
        timezone_name: IANA timezone defining the local day
        profile_document: Raw /api/v1/profile.json payload
        treatments: Treatments covering the padded fetch window
        extra_profile_switches: Switch records fetched separately (e.g. the
            latest switch before the day); added unless a switch with the
            same timestamp is already present

    Returns:
        BasalDay with the coalesced segments and their total
    """
    window = resolve_window(date_str, timezone_name)

    store = normalize_profile_store(profile_document)
    if store is None:
        raise ProfileStoreError("No usable profile store found")

    treatments = [t for t in treatments if isinstance(t, Mapping)]

    # Switches older than the fetch window come in through extra_profile_switches
    switch_records = [t for t in treatments if is_profile_switch(t)]
    seen = {resolve_timestamp(r) for r in switch_records}
    for record in extra_profile_switches:
        timestamp = resolve_timestamp(record)
        if timestamp is not None and timestamp not in seen:
            switch_records.append(record)
            seen.add(timestamp)
    switches = [sw for sw in map(parse_profile_switch, switch_records) if sw is not None]

    baseline = build_baseline(timezone_name, window.day_start, window.day_end,
                              store.schedules, store.default_profile, switches)
    overlays = parse_overlays(treatments)
    segments = assemble_timeline(window.day_start, window.day_end, baseline, overlays)

    return BasalDay(
        date=date_str,
        tz=timezone_name,
        window=window,
        segments=tuple(segments),
        total_units=round4(sum(s.total_units for s in segments)),
        counts={
            'treatments': len(treatments),
            'profile_switches': len(switches),
            'temp_basals': len(overlays.temps),
            'combo_boluses': len(overlays.combos),
            'baseline_segments': len(baseline),
            'segments': len(segments),
        },
    )
