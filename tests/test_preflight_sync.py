from dataclasses import dataclass
from types import SimpleNamespace

import pytest

from rudolph.clock import FrozenTimeProvider, parse_rfc3339
from rudolph.preflight_sync import (
    NO_PREVIOUS_CLEAN_SYNC,
    CleanSyncService,
    days_since_last_clean_sync,
    determine_clean_sync_by_rule_count,
    determine_periodic_refresh_clean_sync,
    feed_sync_state_cursor,
    machine_id_to_int,
)


@dataclass
class _SyncState:
    last_clean_sync: str = ""
    feed_sync_cursor: str = ""


def _frozen(ts):
    return FrozenTimeProvider(parse_rfc3339(ts))


def _request(binary=0, cert=0, compiler=0, transitive=0):
    return SimpleNamespace(
        binary_rule_count=binary,
        certificate_rule_count=cert,
        compiler_rule_count=compiler,
        transitive_rule_count=transitive,
    )


@pytest.mark.parametrize(
    "machine_id, expected",
    [
        ("52c9e6f1-046d-46db-9bc0-0fe142920093", 6),
        ("18bd9617-dfe7-4239-9c1f-dd986e0e7647", 0),
        ("cf5181ed-2941-4a11-bfc6-6442b3684a09", 1),
        ("297d2635-8296-4a79-be0b-c577ab6da363", 10),
        ("89e6a5ae-d04d-4662-a285-e0386a2a613c", 3),
    ],
)
def test_machine_id_to_int(machine_id, expected):
    assert machine_id_to_int(machine_id) == expected


def test_machine_id_to_int_is_stable_and_in_range():
    for n in range(200):
        machine_id = f"machine-{n}"
        value = machine_id_to_int(machine_id)
        assert 0 <= value <= 10
        assert machine_id_to_int(machine_id) == value


@pytest.mark.parametrize(
    "machine_id, days, expected",
    [
        ("18bd9617-dfe7-4239-9c1f-dd986e0e7647", 0, False),
        ("18bd9617-dfe7-4239-9c1f-dd986e0e7647", 6, False),
        ("89e6a5ae-d04d-4662-a285-e0386a2a613c", 6, False),
        ("297d2635-8296-4a79-be0b-c577ab6da363", 1, False),
        ("297d2635-8296-4a79-be0b-c577ab6da363", 7, False),
        ("89e6a5ae-d04d-4662-a285-e0386a2a613c", 10, True),
        ("18bd9617-dfe7-4239-9c1f-dd986e0e7647", 7, True),
        ("297d2635-8296-4a79-be0b-c577ab6da363", 17, True),
    ],
)
def test_determine_periodic_refresh_clean_sync(machine_id, days, expected):
    assert determine_periodic_refresh_clean_sync(machine_id, days) is expected


@pytest.mark.parametrize(
    "current, sync_state, expected",
    [
        ("2020-01-01T00:00:00Z", None, 99999999),
        ("2020-01-01T00:00:00Z", _SyncState(), 99999999),
        ("2020-01-01T00:00:00Z", _SyncState(last_clean_sync="2020-01-01T00:00:00Z"), 0),
        ("2020-01-01T01:00:00Z", _SyncState(last_clean_sync="2020-01-01T00:00:00Z"), 0),
        ("2020-01-02T00:00:00Z", _SyncState(last_clean_sync="2020-01-01T00:00:00Z"), 1),
        ("2020-01-02T12:00:00Z", _SyncState(last_clean_sync="2020-01-01T00:00:00Z"), 1),
        ("2020-01-04T00:00:00Z", _SyncState(last_clean_sync="2020-01-01T00:00:00Z"), 3),
        ("2020-02-01T00:00:00Z", _SyncState(last_clean_sync="2020-01-01T00:00:00Z"), 31),
    ],
)
def test_days_since_last_clean_sync(current, sync_state, expected):
    assert days_since_last_clean_sync(_frozen(current), sync_state) == expected


def test_days_since_last_clean_sync_unparseable():
    state = _SyncState(last_clean_sync="yesterday")
    assert days_since_last_clean_sync(_frozen("2020-01-01T00:00:00Z"), state) == NO_PREVIOUS_CLEAN_SYNC


def test_clean_sync_by_rule_count():
    assert determine_clean_sync_by_rule_count(_request()) is True
    assert determine_clean_sync_by_rule_count(_request(binary=3, cert=2)) is False
    assert determine_clean_sync_by_rule_count(_request(transitive=1)) is False


def test_feed_sync_cursor_inherited():
    state = _SyncState(feed_sync_cursor="2000-12-15T00:00:00Z")
    assert feed_sync_state_cursor(_frozen("2001-01-01T00:00:00Z"), state) == (
        "2000-12-15T00:00:00Z",
        False,
    )


@pytest.mark.parametrize("state", [None, _SyncState()])
def test_feed_sync_cursor_starts_now_and_forces_clean_sync(state):
    assert feed_sync_state_cursor(_frozen("2001-01-01T00:00:00Z"), state) == (
        "2001-01-01T00:00:00Z",
        True,
    )


def test_clean_sync_service_no_rules_forces_clean_sync():
    service = CleanSyncService(_frozen("2001-01-01T00:00:00Z"))
    state = _SyncState(last_clean_sync="2000-12-31T00:00:00Z")
    assert service.determine_clean_sync("any-machine", _request(), state) is True


def test_clean_sync_service_refresh_after_long_gap():
    service = CleanSyncService(_frozen("2001-01-01T00:00:00Z"))
    state = _SyncState(last_clean_sync="2000-12-01T00:00:00Z")
    assert service.determine_clean_sync("any-machine", _request(binary=3), state) is True


def test_clean_sync_service_no_refresh_when_recent():
    service = CleanSyncService(_frozen("2001-01-01T00:00:00Z"))
    state = _SyncState(last_clean_sync="2000-12-31T00:00:00Z")
    assert service.determine_clean_sync("any-machine", _request(binary=3), state) is False