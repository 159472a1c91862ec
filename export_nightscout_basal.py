#!/usr/bin/env python3
"""
Nightscout Basal Exporter
Fetches profiles, treatments and CGM entries from the Nightscout API,
reconstructs the basal insulin delivered on each requested local day and
exports the resulting rate segments, together with the day's CGM readings,
boluses, carbs and the profile definitions, to CSV and/or JSON.
"""

import argparse
import json
import os
import sys
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Optional
from urllib.parse import urlparse, parse_qs, urlencode, urlunparse

import pandas as pd
import requests
from dateutil.relativedelta import relativedelta
from dotenv import load_dotenv

from basal_timeline import (
    EPOCH,
    BasalComputationError,
    BasalDay,
    InvalidDateError,
    InvalidTimezoneError,
    compute_basal_segments,
    format_local,
    is_profile_switch,
    load_zone,
    normalize_profile_store,
    parse_local_date,
    resolve_timestamp,
    resolve_window,
    to_iso_string,
)
from diary_records import (
    DiaryDay,
    build_diary_day,
    profile_definition_rows,
    to_epoch_ms,
)

TREATMENTS_PAGE_SIZE = 1000
MAX_TREATMENT_SKIP = 10000
ENTRIES_PAGE_SIZE = 1000
MAX_ENTRY_PAGES = 100
REQUEST_TIMEOUT_SECONDS = 30

SEGMENT_COLUMNS = ['date', 'start', 'end', 'start_local', 'end_local',
                   'rate_U_per_h', 'total_U', 'label']
DAILY_COLUMNS = ['date', 'timezone', 'total_U', 'segments', 'treatments',
                 'profile_switches', 'temp_basals', 'combo_boluses',
                 'bolus_U', 'carbs_g', 'cgm_readings']
CGM_COLUMNS = ['date', 'timestamp', 'local_time', 'sgv_mg_dl']
BOLUS_COLUMNS = ['date', 'timestamp', 'local_time', 'insulin_U', 'event_type']
CARB_COLUMNS = ['date', 'timestamp', 'local_time', 'carbs_g', 'event_type']
PROFILE_COLUMNS = ['profile_id', 'profile', 'is_default', 'start_date', 'timezone',
                   'time', 'minute', 'rate_U_per_h']


def load_environment() -> tuple[str, Optional[str], Optional[str]]:
    """Load and validate environment variables from .env file.

    Extracts token from URL query string if present (e.g., ?token=abc123).
    Priority: NIGHTSCOUT_TOKEN env var > URL token parameter.

    Returns:
        (base_url, token, timezone) where token and timezone may be None
    """
    env_path = Path(__file__).parent / ".env"
    load_dotenv(env_path)

    base_url = os.getenv("NIGHTSCOUT_URL")
    token = os.getenv("NIGHTSCOUT_TOKEN")
    timezone_name = os.getenv("NIGHTSCOUT_TIMEZONE") or None

    if not base_url:
        print("Error: Missing required environment variables.", file=sys.stderr)
        print("Please ensure .env file contains NIGHTSCOUT_URL (and NIGHTSCOUT_TOKEN if authentication is enabled)",
              file=sys.stderr)
        sys.exit(1)

    parsed_url = urlparse(base_url)
    query_params = parse_qs(parsed_url.query)

    url_token = None
    if 'token' in query_params:
        url_token = query_params.pop('token')[0]
        base_url = urlunparse((
            parsed_url.scheme,
            parsed_url.netloc,
            parsed_url.path,
            parsed_url.params,
            urlencode(query_params, doseq=True),
            parsed_url.fragment
        ))

    if not token and url_token:
        token = url_token

    return base_url, token, timezone_name


class NightscoutClient:
    """Minimal Nightscout API v1 client.

    Built once by the caller and handed to whatever needs remote data, so
    tests can swap the session or point it at a mocked server.
    """

    def __init__(self, base_url: str, token: Optional[str] = None,
                 session: Optional[requests.Session] = None,
                 timeout: float = REQUEST_TIMEOUT_SECONDS):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    def query(self, endpoint: str, params: Optional[dict] = None,
              data_type_name: str = "data") -> Any:
        """GET /api/v1/<endpoint> and return the decoded JSON body.

        Network, HTTP and decoding failures are fatal for the export: an
        error is printed and the process exits with status 1.
        """
        url = f"{self.base_url}/api/v1/{endpoint}"
        request_params = dict(params or {})
        if self.token:
            request_params["token"] = self.token
        headers = {"accept": "application/json"}

        try:
            response = self.session.get(url, params=request_params, headers=headers,
                                        timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            print(f"Error: Failed to fetch {data_type_name}: {e}", file=sys.stderr)
            sys.exit(1)

    def fetch_profile_document(self) -> Any:
        print("\nFetching profiles from Nightscout API...")
        return self.query("profile.json", data_type_name="profiles")

    def fetch_treatments(self, start_iso: str, end_iso: str) -> list[dict]:
        """Fetch all treatments with created_at in [start_iso, end_iso).

        Pages with skip/count until a short page, giving up after
        MAX_TREATMENT_SKIP records. Result is sorted by resolved timestamp,
        keeping server order for ties.
        """
        treatments = []
        skip = 0
        while True:
            batch = self.query("treatments.json", params={
                "find[created_at][$gte]": start_iso,
                "find[created_at][$lt]": end_iso,
                "count": TREATMENTS_PAGE_SIZE,
                "skip": skip,
            }, data_type_name="treatments")
            if not isinstance(batch, list) or not batch:
                break
            treatments.extend(t for t in batch if isinstance(t, dict))
            if len(batch) < TREATMENTS_PAGE_SIZE:
                break
            skip += len(batch)
            if skip > MAX_TREATMENT_SKIP:
                print(f"Warning: Stopped paging treatments after {skip} records", file=sys.stderr)
                break

        return sorted(treatments, key=lambda t: resolve_timestamp(t) or EPOCH)

    def fetch_entries(self, start: datetime, end: datetime) -> list[dict]:
        """Fetch CGM entries with epoch-ms date in [start, end).

        Pages backwards with a date cursor: each page asks for entries older
        than the oldest one already seen.
        """
        start_ms = to_epoch_ms(start)
        cursor_ms = to_epoch_ms(end)
        entries = []
        for _ in range(MAX_ENTRY_PAGES):
            batch = self.query("entries.json", params={
                "find[date][$gte]": start_ms,
                "find[date][$lt]": cursor_ms,
                "count": ENTRIES_PAGE_SIZE,
            }, data_type_name="entries")
            if not isinstance(batch, list) or not batch:
                break
            batch = [e for e in batch if isinstance(e, dict)]
            entries.extend(batch)

            dates = [e['date'] for e in batch
                     if isinstance(e.get('date'), (int, float)) and not isinstance(e.get('date'), bool)]
            oldest = min(dates, default=cursor_ms)
            # No progress means the server ignored the cursor
            if oldest >= cursor_ms or len(batch) < ENTRIES_PAGE_SIZE:
                break
            cursor_ms = int(oldest)
        else:
            print(f"Warning: Stopped paging entries after {MAX_ENTRY_PAGES} pages", file=sys.stderr)

        return entries

    def fetch_latest_profile_switch(self, before: datetime) -> Optional[dict]:
        """Most recent Profile Switch at or before `before`, or None.

        Pages newest first, so the first page holding a usable switch wins.
        """
        skip = 0
        while True:
            batch = self.query("treatments.json", params={
                "find[eventType]": "Profile Switch",
                "find[created_at][$lte]": to_iso_string(before),
                "sort$desc": "created_at",
                "count": TREATMENTS_PAGE_SIZE,
                "skip": skip,
            }, data_type_name="profile switches")
            if not isinstance(batch, list) or not batch:
                return None

            # Compare within the page instead of trusting server order
            latest, latest_time = None, None
            for record in batch:
                if not isinstance(record, dict) or not is_profile_switch(record):
                    continue
                timestamp = resolve_timestamp(record)
                if timestamp is None or timestamp > before:
                    continue
                if latest_time is None or timestamp > latest_time:
                    latest, latest_time = record, timestamp
            if latest is not None:
                return latest

            if len(batch) < TREATMENTS_PAGE_SIZE:
                return None
            skip += len(batch)
            if skip > MAX_TREATMENT_SKIP:
                print(f"Warning: No profile switch found in the latest {skip} records", file=sys.stderr)
                return None


def compute_basal_day(client: NightscoutClient, date_str: str, timezone_name: str,
                      profile_document: Any = None,
                      treatments: Optional[list[dict]] = None) -> BasalDay:
    """Fetch everything needed for one local day and compute its basal.

    Args:
        client: Nightscout client
        date_str: Day in YYYY-MM-DD format
        timezone_name: IANA timezone defining the local day
        profile_document: Already fetched profile payload (fetched when None)
        treatments: Already fetched treatments of the padded fetch window
                    (fetched when None)

    Raises:
        BasalComputationError: the day cannot be computed
    """
    window = resolve_window(date_str, timezone_name)

    if profile_document is None:
        profile_document = client.fetch_profile_document()

    if treatments is None:
        treatments = client.fetch_treatments(to_iso_string(window.fetch_start),
                                             to_iso_string(window.fetch_end))
    latest_switch = client.fetch_latest_profile_switch(window.day_start)

    return compute_basal_segments(
        date_str,
        timezone_name,
        profile_document,
        treatments,
        [latest_switch] if latest_switch else [],
    )


@dataclass(frozen=True)
class DayReport:
    """Everything exported for one local day."""

    basal: BasalDay
    diary: DiaryDay

    @property
    def date(self) -> str:
        return self.basal.date

    def to_dict(self) -> dict:
        return {
            'date': self.basal.date,
            'tz': self.basal.tz,
            'basal': self.basal.to_dict(),
            **self.diary.to_dict(),
        }


def collect_day(client: NightscoutClient, date_str: str, timezone_name: str,
                profile_document: Any) -> DayReport:
    """Fetch one local day once and build both its basal and its diary records.

    Raises:
        BasalComputationError: the day's basal cannot be computed
    """
    window = resolve_window(date_str, timezone_name)

    treatments = client.fetch_treatments(to_iso_string(window.fetch_start),
                                         to_iso_string(window.fetch_end))
    basal = compute_basal_day(client, date_str, timezone_name, profile_document, treatments)

    entries = client.fetch_entries(window.day_start, window.day_end)
    diary = build_diary_day(date_str, timezone_name, window, entries, treatments)

    return DayReport(basal=basal, diary=diary)


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    default_output_folder = './output'
    default_format = 'csv'

    parser = argparse.ArgumentParser(
        description="Export basal insulin delivery reconstructed from Nightscout profiles and treatments, "
                    "together with CGM readings, boluses, carbs and profile definitions."
    )
    parser.add_argument(
        "--from-date",
        type=str,
        default=None,
        help="First day in YYYY-MM-DD format (default: yesterday in the selected timezone)"
    )
    parser.add_argument(
        "--to-date",
        type=str,
        default=None,
        help="Last day in YYYY-MM-DD format, inclusive (default: same as --from-date)"
    )
    parser.add_argument(
        "--timezone",
        type=str,
        default=None,
        help="IANA timezone defining local days (default: NIGHTSCOUT_TIMEZONE, then the profile timezone, then UTC)"
    )
    parser.add_argument(
        "--output-folder",
        type=str,
        default=default_output_folder,
        help=f"Output folder path, relative or absolute (default: {default_output_folder})"
    )
    parser.add_argument(
        "--format",
        choices=['csv', 'json', 'both'],
        default=default_format,
        help=f"Output format (default: {default_format})"
    )
    parser.add_argument(
        "--skip-failed-days",
        type=lambda x: x.lower() in ('true', '1', 'yes'),
        default=True,
        help="Skip days that cannot be computed instead of aborting (default: True)"
    )

    return parser.parse_args(argv)


def parse_date(date_str: str) -> date:
    """Parse date string in YYYY-MM-DD format."""
    try:
        return parse_local_date(date_str)
    except InvalidDateError:
        print(f"Error: Invalid date format '{date_str}'. Please use YYYY-MM-DD format (e.g., 2025-01-01)",
              file=sys.stderr)
        sys.exit(1)


def resolve_timezone(cli_timezone: Optional[str], env_timezone: Optional[str],
                     profile_document: Any) -> str:
    """Pick the timezone for local days: CLI > environment > profile > UTC."""
    store = normalize_profile_store(profile_document)
    profile_timezone = store.timezone if store is not None else None

    timezone_name = cli_timezone or env_timezone or profile_timezone or "UTC"
    try:
        load_zone(timezone_name)
    except InvalidTimezoneError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    return timezone_name


def resolve_date_range(timezone_name: str, from_date: Optional[str], to_date: Optional[str],
                       today: Optional[date] = None) -> list[str]:
    """Expand the requested range into the list of days to compute.

    Without dates the range is yesterday (in the given timezone). A single
    bound makes a one-day range.
    """
    if today is None:
        today = datetime.now(load_zone(timezone_name)).date()
    yesterday = today - relativedelta(days=1)

    start = parse_date(from_date) if from_date else None
    end = parse_date(to_date) if to_date else None
    start = start or end or yesterday
    end = end or start

    if start > end:
        print(f"Error: --from-date ({start}) must not be after --to-date ({end})", file=sys.stderr)
        sys.exit(1)

    days = []
    current = start
    while current <= end:
        days.append(current.strftime("%Y-%m-%d"))
        current += relativedelta(days=1)
    return days


def export_days(client: NightscoutClient, days: Iterable[str], timezone_name: str,
                profile_document: Any, skip_failed_days: bool = True) -> list[DayReport]:
    """Collect every requested day.

    A day whose basal cannot be computed is skipped with a warning, or aborts
    the export when skip_failed_days is False.
    """
    print(f"\nCollecting daily data ({timezone_name})...")
    results = []
    for day in days:
        try:
            result = collect_day(client, day, timezone_name, profile_document)
        except BasalComputationError as e:
            if not skip_failed_days:
                print(f"Error: Failed to compute {day}: {e}", file=sys.stderr)
                sys.exit(1)
            print(f"Warning: Skipping {day}: {e}", file=sys.stderr)
            continue

        print(f"  {day}: {result.basal.total_units:.2f} U basal in {len(result.basal.segments)} segment(s), "
              f"{result.diary.total_bolus_units:.2f} U bolus, {result.diary.total_carbs_grams:.0f} g carbs, "
              f"{len(result.diary.cgm)} CGM readings")
        results.append(result)
    return results


def segments_to_dataframe(days: Iterable[BasalDay]) -> pd.DataFrame:
    """One row per resolved segment, with UTC and local timestamps."""
    rows = []
    for day in days:
        zone = load_zone(day.tz)
        for segment in day.segments:
            rows.append({
                'date': day.date,
                'start': to_iso_string(segment.start),
                'end': to_iso_string(segment.end),
                'start_local': format_local(segment.start, zone),
                'end_local': format_local(segment.end, zone),
                'rate_U_per_h': segment.rate,
                'total_U': segment.total_units,
                'label': segment.label,
            })
    return pd.DataFrame(rows, columns=SEGMENT_COLUMNS)


def daily_totals_to_dataframe(reports: Iterable[DayReport]) -> pd.DataFrame:
    """One row per collected day with its basal, bolus and carb totals and record counts."""
    rows = []
    for report in reports:
        basal, diary = report.basal, report.diary
        rows.append({
            'date': basal.date,
            'timezone': basal.tz,
            'total_U': basal.total_units,
            'segments': len(basal.segments),
            'treatments': basal.counts.get('treatments', 0),
            'profile_switches': basal.counts.get('profile_switches', 0),
            'temp_basals': basal.counts.get('temp_basals', 0),
            'combo_boluses': basal.counts.get('combo_boluses', 0),
            'bolus_U': diary.total_bolus_units,
            'carbs_g': diary.total_carbs_grams,
            'cgm_readings': len(diary.cgm),
        })
    return pd.DataFrame(rows, columns=DAILY_COLUMNS)


def cgm_to_dataframe(diaries: Iterable[DiaryDay]) -> pd.DataFrame:
    rows = []
    for diary in diaries:
        zone = load_zone(diary.tz)
        for reading in diary.cgm:
            rows.append({
                'date': diary.date,
                'timestamp': to_iso_string(reading.timestamp),
                'local_time': format_local(reading.timestamp, zone),
                'sgv_mg_dl': reading.sgv,
            })
    return pd.DataFrame(rows, columns=CGM_COLUMNS)


def boluses_to_dataframe(diaries: Iterable[DiaryDay]) -> pd.DataFrame:
    rows = []
    for diary in diaries:
        zone = load_zone(diary.tz)
        for bolus in diary.boluses:
            rows.append({
                'date': diary.date,
                'timestamp': to_iso_string(bolus.timestamp),
                'local_time': format_local(bolus.timestamp, zone),
                'insulin_U': bolus.units,
                'event_type': bolus.event_type,
            })
    return pd.DataFrame(rows, columns=BOLUS_COLUMNS)


def carbs_to_dataframe(diaries: Iterable[DiaryDay]) -> pd.DataFrame:
    rows = []
    for diary in diaries:
        zone = load_zone(diary.tz)
        for carb in diary.carbs:
            rows.append({
                'date': diary.date,
                'timestamp': to_iso_string(carb.timestamp),
                'local_time': format_local(carb.timestamp, zone),
                'carbs_g': carb.grams,
                'event_type': carb.event_type,
            })
    return pd.DataFrame(rows, columns=CARB_COLUMNS)


def profiles_to_dataframe(profile_document: Any) -> pd.DataFrame:
    """One row per basal step of every profile definition."""
    return pd.DataFrame(profile_definition_rows(profile_document), columns=PROFILE_COLUMNS)


def safe_csv_export(df: pd.DataFrame, file_path: Path, description: str) -> bool:
    """Export DataFrame to CSV, reporting write failures instead of raising.

    Returns:
        bool: True if successful, False if failed
    """
    try:
        df.to_csv(file_path, index=False)
        print(f"{description} exported to: {file_path}")
        return True
    except PermissionError:
        print(f"\nError: Cannot write to {file_path}", file=sys.stderr)
        print("The file may be open in another program (e.g., Excel). Please close it and try again.",
              file=sys.stderr)
        return False
    except OSError as e:
        print(f"\nError: Failed to write {file_path}: {e}", file=sys.stderr)
        return False


def safe_json_export(reports: Iterable[DayReport], profile_document: Any, file_path: Path,
                     description: str) -> bool:
    """Export collected days and the profile definitions as one JSON document."""
    payload = {
        'days': [report.to_dict() for report in reports],
        'profiles': profile_definition_rows(profile_document),
    }
    try:
        with open(file_path, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2)
        print(f"{description} exported to: {file_path}")
        return True
    except OSError as e:
        print(f"\nError: Failed to write {file_path}: {e}", file=sys.stderr)
        return False


def write_reports(reports: list[DayReport], profile_document: Any, output_folder: Path,
                  date_range_suffix: str, output_format: str) -> bool:
    """Write the requested report files; False if any write failed."""
    ok = True
    if output_format in ('csv', 'both'):
        basal_days = [r.basal for r in reports]
        diaries = [r.diary for r in reports]
        csv_exports = [
            (segments_to_dataframe(basal_days), "basal_segments", "Basal segments"),
            (daily_totals_to_dataframe(reports), "daily", "Daily totals"),
            (cgm_to_dataframe(diaries), "cgm", "CGM readings"),
            (boluses_to_dataframe(diaries), "boluses", "Boluses"),
            (carbs_to_dataframe(diaries), "carbs", "Carbs"),
            (profiles_to_dataframe(profile_document), "profiles", "Profiles"),
        ]
        for df, name, description in csv_exports:
            ok &= safe_csv_export(df, output_folder / f"{date_range_suffix}-{name}.csv", description)
    if output_format in ('json', 'both'):
        ok &= safe_json_export(reports, profile_document,
                               output_folder / f"{date_range_suffix}-nightscout.json",
                               "Nightscout report")
    return ok


def main(argv: Optional[list[str]] = None):
    """Main execution function."""
    args = parse_arguments(argv)
    base_url, token, env_timezone = load_environment()

    client = NightscoutClient(base_url, token)
    profile_document = client.fetch_profile_document()
    timezone_name = resolve_timezone(args.timezone, env_timezone, profile_document)

    days = resolve_date_range(timezone_name, args.from_date, args.to_date)

    output_folder = Path(args.output_folder)
    if not output_folder.is_absolute():
        output_folder = Path(__file__).parent / output_folder
    if not output_folder.exists():
        output_folder.mkdir(parents=True, exist_ok=True)
        print(f"Created output folder: {output_folder}")

    date_range_suffix = f"{days[0].replace('-', '')}-{days[-1].replace('-', '')}"

    print(f"Date range: From {days[0]} To {days[-1]} ({len(days)} day(s))")
    print(f"Timezone: {timezone_name}")

    results = export_days(client, days, timezone_name, profile_document, args.skip_failed_days)
    if not results:
        print("Error: No day could be computed", file=sys.stderr)
        sys.exit(1)

    print()
    if not write_reports(results, profile_document, output_folder, date_range_suffix, args.format):
        sys.exit(1)

    total_basal = sum(r.basal.total_units for r in results)
    total_bolus = sum(r.diary.total_bolus_units for r in results)
    print(f"Days computed: {len(results)}/{len(days)}")
    print(f"Total basal insulin: {total_basal:.2f} units")
    print(f"Total bolus insulin: {total_bolus:.2f} units")


if __name__ == "__main__":
    main()
