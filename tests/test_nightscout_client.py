"""Tests for the Nightscout API client."""

from urllib.parse import parse_qs, urlparse

import pytest
import responses

from conftest import utc
from export_nightscout_basal import ENTRIES_PAGE_SIZE, TREATMENTS_PAGE_SIZE, NightscoutClient

BASE_URL = "https://test.nightscout.com"
TREATMENTS_URL = f"{BASE_URL}/api/v1/treatments.json"


def temp_basal(minute_offset):
    return {
        'eventType': 'Temp Basal',
        'mills': 1755648000000 + minute_offset * 60_000,
        'duration': 1,
        'absolute': 0.5,
    }


class TestQuery:
    """Test NightscoutClient.query error handling."""

    @responses.activate
    def test_server_error_exits(self):
        responses.add(responses.GET, f"{BASE_URL}/api/v1/profile.json",
                      json={"error": "boom"}, status=500)

        with pytest.raises(SystemExit):
            NightscoutClient(BASE_URL, "test-token").fetch_profile_document()

    @responses.activate
    def test_unauthorized_exits(self, capsys):
        responses.add(responses.GET, TREATMENTS_URL, json={"error": "Unauthorized"}, status=401)

        with pytest.raises(SystemExit):
            NightscoutClient(BASE_URL, "bad-token").fetch_treatments("a", "b")

        assert "Failed to fetch treatments" in capsys.readouterr().err

    @responses.activate
    def test_invalid_json_exits(self):
        responses.add(responses.GET, f"{BASE_URL}/api/v1/profile.json", body="<html>", status=200)

        with pytest.raises(SystemExit):
            NightscoutClient(BASE_URL).fetch_profile_document()

    @responses.activate
    def test_token_omitted_when_not_configured(self):
        responses.add(responses.GET, f"{BASE_URL}/api/v1/profile.json", json=[], status=200)

        NightscoutClient(BASE_URL + "/").fetch_profile_document()

        query = parse_qs(urlparse(responses.calls[0].request.url).query)
        assert 'token' not in query
        assert responses.calls[0].request.url.startswith(f"{BASE_URL}/api/v1/profile.json")


class TestFetchTreatments:
    """Test paged treatment fetching."""

    @responses.activate
    def test_pages_until_short_page(self):
        first_page = [temp_basal(i) for i in range(TREATMENTS_PAGE_SIZE)]
        second_page = [temp_basal(TREATMENTS_PAGE_SIZE + i) for i in range(5)]
        responses.add(responses.GET, TREATMENTS_URL, json=first_page, status=200)
        responses.add(responses.GET, TREATMENTS_URL, json=second_page, status=200)

        treatments = NightscoutClient(BASE_URL).fetch_treatments("2025-08-18T22:00:00.000Z",
                                                                 "2025-08-20T23:00:00.000Z")

        assert len(treatments) == TREATMENTS_PAGE_SIZE + 5
        assert len(responses.calls) == 2
        skips = [parse_qs(urlparse(c.request.url).query)['skip'] for c in responses.calls]
        assert skips == [['0'], [str(TREATMENTS_PAGE_SIZE)]]

    @responses.activate
    def test_sorted_by_timestamp(self):
        responses.add(responses.GET, TREATMENTS_URL, json=[
            {'eventType': 'Note', 'created_at': '2025-08-20T10:00:00Z', '_id': 'late'},
            {'eventType': 'Note', 'created_at': '2025-08-20T08:00:00Z', '_id': 'early'},
            {'eventType': 'Note', 'created_at': '2025-08-20T10:00:00Z', '_id': 'late-2'},
        ], status=200)

        treatments = NightscoutClient(BASE_URL).fetch_treatments("a", "b")

        assert [t['_id'] for t in treatments] == ['early', 'late', 'late-2']

    @responses.activate
    def test_empty_response(self):
        responses.add(responses.GET, TREATMENTS_URL, json=[], status=200)

        assert NightscoutClient(BASE_URL).fetch_treatments("a", "b") == []


class TestFetchLatestProfileSwitch:
    """Test NightscoutClient.fetch_latest_profile_switch."""

    @responses.activate
    def test_picks_most_recent_before_cutoff(self):
        responses.add(responses.GET, TREATMENTS_URL, json=[
            {'eventType': 'Profile Switch', 'created_at': '2025-08-10T08:00:00Z', '_id': 'older'},
            {'eventType': 'Profile Switch', 'created_at': '2025-08-19T08:00:00Z', '_id': 'latest'},
            {'eventType': 'Profile Switch', 'created_at': '2025-08-20T08:00:00Z', '_id': 'too-late'},
            {'eventType': 'Temp Basal', 'created_at': '2025-08-19T09:00:00Z', '_id': 'not-a-switch'},
        ], status=200)

        switch = NightscoutClient(BASE_URL).fetch_latest_profile_switch(utc(2025, 8, 19, 22))

        assert switch['_id'] == 'latest'

    @responses.activate
    def test_none_found(self):
        responses.add(responses.GET, TREATMENTS_URL, json=[], status=200)

        assert NightscoutClient(BASE_URL).fetch_latest_profile_switch(utc(2025, 8, 19, 22)) is None

    @responses.activate
    def test_requests_newest_first(self):
        responses.add(responses.GET, TREATMENTS_URL, json=[], status=200)

        NightscoutClient(BASE_URL).fetch_latest_profile_switch(utc(2025, 8, 19, 22))

        query = parse_qs(urlparse(responses.calls[0].request.url).query)
        assert query['sort$desc'] == ['created_at']
        assert query['find[created_at][$lte]'] == ['2025-08-19T22:00:00.000Z']
        assert query['skip'] == ['0']

    @responses.activate
    def test_pages_until_usable_switch(self):
        unusable = [{'eventType': 'Profile Switch', 'created_at': '2025-08-21T08:00:00Z'}
                    for _ in range(TREATMENTS_PAGE_SIZE)]
        responses.add(responses.GET, TREATMENTS_URL, json=unusable, status=200)
        responses.add(responses.GET, TREATMENTS_URL, json=[
            {'eventType': 'Profile Switch', 'created_at': '2025-08-18T08:00:00Z', '_id': 'older'},
        ], status=200)

        switch = NightscoutClient(BASE_URL).fetch_latest_profile_switch(utc(2025, 8, 19, 22))

        assert switch['_id'] == 'older'
        skips = [parse_qs(urlparse(c.request.url).query)['skip'] for c in responses.calls]
        assert skips == [['0'], [str(TREATMENTS_PAGE_SIZE)]]


class TestFetchEntries:
    """Test cursor-paged CGM entry fetching."""

    ENTRIES_URL = f"{BASE_URL}/api/v1/entries.json"

    @responses.activate
    def test_single_page(self):
        responses.add(responses.GET, self.ENTRIES_URL, json=[
            {'type': 'sgv', 'date': 1755676800000, 'sgv': 142},
            {'type': 'sgv', 'date': 1755676500000, 'sgv': 140},
        ], status=200)

        entries = NightscoutClient(BASE_URL).fetch_entries(utc(2025, 8, 19, 22), utc(2025, 8, 20, 22))

        assert [e['sgv'] for e in entries] == [142, 140]
        query = parse_qs(urlparse(responses.calls[0].request.url).query)
        assert query['find[date][$gte]'] == ['1755640800000']
        assert query['find[date][$lt]'] == ['1755727200000']
        assert query['count'] == [str(ENTRIES_PAGE_SIZE)]

    @responses.activate
    def test_cursor_moves_to_oldest_entry(self):
        newest_ms = 1755720000000
        first_page = [{'type': 'sgv', 'date': newest_ms - i * 60_000, 'sgv': 100}
                      for i in range(ENTRIES_PAGE_SIZE)]
        oldest_ms = newest_ms - (ENTRIES_PAGE_SIZE - 1) * 60_000
        responses.add(responses.GET, self.ENTRIES_URL, json=first_page, status=200)
        responses.add(responses.GET, self.ENTRIES_URL, json=[
            {'type': 'sgv', 'date': oldest_ms - 60_000, 'sgv': 90},
        ], status=200)

        entries = NightscoutClient(BASE_URL).fetch_entries(utc(2025, 8, 19, 22), utc(2025, 8, 20, 22))

        assert len(entries) == ENTRIES_PAGE_SIZE + 1
        second_query = parse_qs(urlparse(responses.calls[1].request.url).query)
        assert second_query['find[date][$lt]'] == [str(oldest_ms)]

    @responses.activate
    def test_stops_when_cursor_does_not_move(self):
        stuck_page = [{'type': 'sgv', 'date': 1755727200000, 'sgv': 100}] * ENTRIES_PAGE_SIZE
        responses.add(responses.GET, self.ENTRIES_URL, json=stuck_page, status=200)

        entries = NightscoutClient(BASE_URL).fetch_entries(utc(2025, 8, 19, 22), utc(2025, 8, 20, 22))

        assert len(responses.calls) == 1
        assert len(entries) == ENTRIES_PAGE_SIZE
