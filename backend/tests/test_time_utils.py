from datetime import datetime, timedelta, timezone

import pytest

from posledger.time_utils import parse_iso_datetime, to_utc_z


@pytest.mark.parametrize("text,expected", [
    ("2026-03-01T10:30", datetime(2026, 3, 1, 10, 30)),
    ("2026-03-01T10:30Z", datetime(2026, 3, 1, 10, 30)),
    ("2026-03-01T10:30:00-06:00", datetime(2026, 3, 1, 16, 30)),
    ("  ", None),
    (None, None),
])
def test_parse_iso_datetime_normalizes_to_naive_utc(text, expected):
    assert parse_iso_datetime(text) == expected


def test_parse_iso_datetime_rejects_garbage():
    with pytest.raises(ValueError):
        parse_iso_datetime("yesterday")


def test_to_utc_z_drops_microseconds_and_converts_offsets():
    assert to_utc_z(datetime(2026, 3, 1, 10, 30, 5, 999)) == "2026-03-01T10:30:05Z"
    aware = datetime(2026, 3, 1, 4, 0, tzinfo=timezone(timedelta(hours=-6)))
    assert to_utc_z(aware) == "2026-03-01T10:00:00Z"
    assert to_utc_z(None) is None
