"""
Nightscout Diary Records
Extracts the CGM readings, boluses and carb entries of one local day from raw
Nightscout entries and treatments, and flattens profile definitions into
basal schedule rows.
"""

import math
import numbers
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional

from basal_timeline import (
    EPOCH,
    DayWindow,
    format_local,
    load_zone,
    parse_basal_schedule,
    resolve_timestamp,
    round4,
    to_iso_string,
)


@dataclass(frozen=True)
class CgmReading:
    timestamp: datetime
    sgv: float


@dataclass(frozen=True)
class BolusEntry:
    timestamp: datetime
    units: float
    event_type: str = ''
    id: Optional[str] = None


@dataclass(frozen=True)
class CarbEntry:
    timestamp: datetime
    grams: float
    event_type: str = ''
    id: Optional[str] = None


@dataclass(frozen=True)
class DiaryDay:
    """CGM readings, boluses and carbs recorded during one local day."""

    date: str
    tz: str
    cgm: tuple[CgmReading, ...] = ()
    boluses: tuple[BolusEntry, ...] = ()
    carbs: tuple[CarbEntry, ...] = ()

    @property
    def total_bolus_units(self) -> float:
        return round4(sum(b.units for b in self.boluses))

    @property
    def total_carbs_grams(self) -> float:
        return round4(sum(c.grams for c in self.carbs))

    def to_dict(self) -> dict:
        zone = load_zone(self.tz)
        return {
            'cgm': [
                {
                    'timestamp': to_iso_string(r.timestamp),
                    'local_time': format_local(r.timestamp, zone),
                    'sgv_mg_dl': r.sgv,
                }
                for r in self.cgm
            ],
            'boluses': [
                {
                    'timestamp': to_iso_string(b.timestamp),
                    'local_time': format_local(b.timestamp, zone),
                    'insulin_U': b.units,
                    'event_type': b.event_type,
                }
                for b in self.boluses
            ],
            'carbs': [
                {
                    'timestamp': to_iso_string(c.timestamp),
                    'local_time': format_local(c.timestamp, zone),
                    'carbs_g': c.grams,
                    'event_type': c.event_type,
                }
                for c in self.carbs
            ],
            'total_bolus_U': self.total_bolus_units,
            'total_carbs_g': self.total_carbs_grams,
        }


def _real(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _event_type(record: Mapping[str, Any]) -> str:
    event_type = record.get('eventType')
    return event_type if isinstance(event_type, str) else ''


def _record_id(record: Mapping[str, Any]) -> Optional[str]:
    record_id = record.get('_id')
    return record_id if isinstance(record_id, str) else None


def to_epoch_ms(dt: datetime) -> int:
    return (dt - EPOCH) // timedelta(milliseconds=1)


def parse_cgm_entries(entries: Iterable[Mapping[str, Any]], start: datetime,
                      end: datetime) -> list[CgmReading]:
    """Glucose readings with their epoch-ms ``date`` in [start, end).

    Entries without a numeric ``sgv`` (meter readings, calibrations) are
    skipped. Readings sharing a timestamp are kept once.
    """
    readings = {}
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        date_ms = _real(entry.get('date'))
        sgv = _real(entry.get('sgv'))
        if date_ms is None or sgv is None:
            continue
        timestamp = EPOCH + timedelta(milliseconds=date_ms)
        if not start <= timestamp < end:
            continue
        readings.setdefault(timestamp, CgmReading(timestamp=timestamp, sgv=sgv))

    return [readings[t] for t in sorted(readings)]


def bolus_units(treatment: Mapping[str, Any]) -> float:
    """Immediate plus extended insulin of a treatment; 0 for invalidated records."""
    if treatment.get('isValid') is False:
        return 0.0
    immediate = _real(treatment.get('insulin')) or 0.0
    extended = _real(treatment.get('insulinExtended')) or 0.0
    return immediate + extended


def extract_boluses(treatments: Iterable[Mapping[str, Any]], start: datetime,
                    end: datetime) -> list[BolusEntry]:
    """Treatments delivering insulin in [start, end), sorted by time."""
    boluses = []
    seen = set()
    for treatment in treatments:
        if not isinstance(treatment, Mapping):
            continue
        units = bolus_units(treatment)
        if units <= 0:
            continue
        timestamp = resolve_timestamp(treatment)
        if timestamp is None or not start <= timestamp < end:
            continue
        # The same bolus is often uploaded by both the pump and the phone
        key = (timestamp, round(units * 1000))
        if key in seen:
            continue
        seen.add(key)
        boluses.append(BolusEntry(timestamp=timestamp, units=units,
                                  event_type=_event_type(treatment), id=_record_id(treatment)))

    return sorted(boluses, key=lambda b: b.timestamp)


def extract_carbs(treatments: Iterable[Mapping[str, Any]], start: datetime,
                  end: datetime) -> list[CarbEntry]:
    """Treatments carrying carbohydrates in [start, end), sorted by time."""
    carbs = []
    seen = set()
    for treatment in treatments:
        if not isinstance(treatment, Mapping):
            continue
        grams = _real(treatment.get('carbs'))
        if grams is None or grams <= 0:
            continue
        timestamp = resolve_timestamp(treatment)
        if timestamp is None or not start <= timestamp < end:
            continue
        key = (timestamp, grams)
        if key in seen:
            continue
        seen.add(key)
        carbs.append(CarbEntry(timestamp=timestamp, grams=grams,
                               event_type=_event_type(treatment), id=_record_id(treatment)))

    return sorted(carbs, key=lambda c: c.timestamp)


def build_diary_day(date_str: str, timezone_name: str, window: DayWindow,
                    entries: Iterable[Mapping[str, Any]],
                    treatments: Iterable[Mapping[str, Any]]) -> DiaryDay:
    """Collect the diary records falling inside the local day of `window`."""
    treatments = list(treatments)
    return DiaryDay(
        date=date_str,
        tz=timezone_name,
        cgm=tuple(parse_cgm_entries(entries, window.day_start, window.day_end)),
        boluses=tuple(extract_boluses(treatments, window.day_start, window.day_end)),
        carbs=tuple(extract_carbs(treatments, window.day_start, window.day_end)),
    )


def profile_definition_rows(profile_document: Any) -> list[dict]:
    """Flatten every profile of every profile document into basal schedule rows.

    Args:
        profile_document: Raw /api/v1/profile.json payload (list or single document)

    Returns:
        One row per basal step: profile_id, profile, is_default, start_date,
        timezone (UTC when the profile has none), time, minute, rate_U_per_h.
        Profiles without a usable basal schedule are left out.
    """
    documents = profile_document if isinstance(profile_document, list) else [profile_document]

    rows = []
    for doc in documents:
        if not isinstance(doc, Mapping):
            continue
        store = doc.get('store')
        if not isinstance(store, Mapping):
            continue
        doc_id = doc.get('_id') if isinstance(doc.get('_id'), str) else ''
        default_name = doc.get('defaultProfile')

        for name, profile in store.items():
            if not isinstance(profile, Mapping):
                continue
            timezone_name = profile.get('timezone')
            if not isinstance(timezone_name, str) or not timezone_name.strip():
                timezone_name = 'UTC'
            for step in parse_basal_schedule(profile):
                rows.append({
                    'profile_id': f"{doc_id}:{name}",
                    'profile': name,
                    'is_default': name == default_name,
                    'start_date': doc.get('startDate', ''),
                    'timezone': timezone_name,
                    'time': f"{step.minute // 60:02d}:{step.minute % 60:02d}",
                    'minute': step.minute,
                    'rate_U_per_h': step.rate,
                })
    return rows
