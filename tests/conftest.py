"""Pytest fixtures for nightscout-basal-exporter tests."""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


def utc(year, month, day, hour=0, minute=0, second=0):
    """Shorthand for an aware UTC datetime."""
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


@pytest.fixture
def sample_profile_document():
    """Profile document as returned by /api/v1/profile.json."""
    return [
        {
            'startDate': '2024-01-01T00:00:00Z',
            'defaultProfile': 'Default',
            'store': {
                'Default': {
                    'dia': 5,
                    'timezone': 'Europe/Brussels',
                    'units': 'mg/dL',
                    'basal': [
                        {'time': '00:00', 'value': 0.5, 'timeAsSeconds': 0},
                        {'time': '06:00', 'value': 0.6, 'timeAsSeconds': 21600},
                        {'time': '12:00', 'value': 0.55, 'timeAsSeconds': 43200},
                        {'time': '18:00', 'value': 0.5, 'timeAsSeconds': 64800}
                    ],
                    'sens': [{'time': '00:00', 'value': 50}],
                    'carbratio': [{'time': '00:00', 'value': 10}],
                    'target_low': [{'time': '00:00', 'value': 90}],
                    'target_high': [{'time': '00:00', 'value': 120}]
                },
                'Sport': {
                    'dia': 5,
                    'timezone': 'Europe/Brussels',
                    'units': 'mg/dL',
                    'basal': [
                        {'time': '00:00', 'value': 0.3},
                        {'time': '14:00', 'value': 0.4}
                    ]
                },
                'Empty': {
                    'dia': 5,
                    'basal': []
                }
            }
        }
    ]


@pytest.fixture
def flat_profile_document():
    """Single flat 0.9 U/h profile."""
    return {
        'defaultProfile': 'Default',
        'store': {
            'Default': {
                'timezone': 'Europe/Brussels',
                'basal': [{'time': '00:00', 'value': 0.9}]
            }
        }
    }


@pytest.fixture
def suspend_day_treatments():
    """Treatments for 2025-08-20 in Europe/Brussels (UTC+2).

    Profile switch to 120% at 08:00 local, suspend (absolute 0) 10:00-10:30.
    """
    return [
        {
            '_id': 'sw1',
            'eventType': 'Profile Switch',
            'created_at': '2025-08-20T06:00:00.000Z',
            'profile': 'Default',
            'percentage': 120,
            'duration': 0
        },
        {
            '_id': 'tb1',
            'eventType': 'Temp Basal',
            'created_at': '2025-08-20T08:00:00.000Z',
            'duration': 30,
            'absolute': 0.0,
            'rate': 0.0
        },
        {
            '_id': 'meal1',
            'eventType': 'Meal Bolus',
            'created_at': '2025-08-20T10:00:00.000Z',
            'insulin': 4.5,
            'carbs': 45
        }
    ]
