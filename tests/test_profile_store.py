"""Tests for profile document normalization."""

from basal_timeline import BasalStep, normalize_profile_store, parse_basal_schedule


class TestParseBasalSchedule:
    """Test parse_basal_schedule function."""

    def test_parse_simple_schedule(self):
        profile = {'basal': [
            {'time': '00:00', 'value': 0.5},
            {'time': '06:00', 'value': 0.6},
            {'time': '12:00', 'value': 0.55},
        ]}

        schedule = parse_basal_schedule(profile)

        assert schedule == (
            BasalStep(minute=0, rate=0.5),
            BasalStep(minute=360, rate=0.6),
            BasalStep(minute=720, rate=0.55),
        )

    def test_minutes_take_precedence(self):
        """Explicit minutes beat seconds-of-day, which beat the HH:MM string."""
        profile = {'basal': [
            {'minutes': 60, 'timeAsSeconds': 7200, 'time': '03:00', 'value': 1.0},
            {'timeAsSeconds': 7200, 'time': '03:00', 'value': 2.0},
            {'time': '03:00', 'value': 3.0},
            {'start': '04:30', 'value': 4.0},
        ]}

        schedule = parse_basal_schedule(profile)

        assert [s.minute for s in schedule] == [60, 120, 180, 270]
        assert [s.rate for s in schedule] == [1.0, 2.0, 3.0, 4.0]

    def test_steps_are_sorted(self):
        profile = {'basal': [
            {'time': '18:00', 'value': 0.5},
            {'time': '00:00', 'value': 0.4},
            {'time': '09:30', 'value': 0.7},
        ]}

        schedule = parse_basal_schedule(profile)

        assert [s.minute for s in schedule] == [0, 570, 1080]

    def test_unparsable_steps_discarded(self):
        profile = {'basal': [
            {'time': '00:00', 'value': 0.5},
            {'time': 'noon', 'value': 0.6},
            {'time': '13:00', 'value': 'abc'},
            {'time': '14:00'},
            {'time': '15:00', 'value': -0.2},
            {'minutes': 2000, 'value': 0.3},
            'garbage',
        ]}

        schedule = parse_basal_schedule(profile)

        assert schedule == (BasalStep(minute=0, rate=0.5),)

    def test_numeric_string_rate_accepted(self):
        schedule = parse_basal_schedule({'basal': [{'time': '00:00', 'value': '0.75'}]})

        assert schedule == (BasalStep(minute=0, rate=0.75),)

    def test_single_value_basal(self):
        """Single value instead of array applies to the whole day."""
        schedule = parse_basal_schedule({'basal': 0.75})

        assert schedule == (BasalStep(minute=0, rate=0.75),)

    def test_missing_basal(self):
        assert parse_basal_schedule({'dia': 5}) == ()


class TestNormalizeProfileStore:
    """Test normalize_profile_store function."""

    def test_normalize_document_list(self, sample_profile_document):
        store = normalize_profile_store(sample_profile_document)

        assert store.default_profile == 'Default'
        assert [s.minute for s in store.schedules['Default']] == [0, 360, 720, 1080]
        assert store.schedules['Sport'][1] == BasalStep(minute=840, rate=0.4)
        assert store.timezone == 'Europe/Brussels'

    def test_profile_without_steps_dropped(self, sample_profile_document):
        store = normalize_profile_store(sample_profile_document)

        assert 'Empty' not in store.schedules

    def test_single_document(self, flat_profile_document):
        store = normalize_profile_store(flat_profile_document)

        assert store.schedules == {'Default': (BasalStep(minute=0, rate=0.9),)}

    def test_only_first_document_used(self, flat_profile_document):
        other = {'defaultProfile': 'Other', 'store': {'Other': {'basal': 1.0}}}

        store = normalize_profile_store([flat_profile_document, other])

        assert store.default_profile == 'Default'
        assert 'Other' not in store.schedules

    def test_default_name_fallbacks(self):
        store = normalize_profile_store({'default': 'Night', 'store': {'Night': {'basal': 0.4}}})
        assert store.default_profile == 'Night'

        store = normalize_profile_store({'store': {'Default': {'basal': 0.4}}})
        assert store.default_profile == 'Default'

    def test_document_without_store_is_the_store(self):
        doc = {
            'defaultProfile': 'Home',
            'startDate': '2024-01-01T00:00:00Z',
            'Home': {'basal': [{'time': '00:00', 'value': 0.8}]},
        }

        store = normalize_profile_store(doc)

        assert store.schedules == {'Home': (BasalStep(minute=0, rate=0.8),)}
        assert store.timezone is None

    def test_unusable_documents(self):
        assert normalize_profile_store([]) is None
        assert normalize_profile_store(None) is None
        assert normalize_profile_store("profile") is None
        assert normalize_profile_store([42]) is None
