import pytest
from datetime import datetime, timezone

from dispatch.config import get_settings
from dispatch.utils import format_clock, parse_clock, parse_time_range, to_millis


# --- Tests for clock parsing ---

def test_parse_clock():
    assert parse_clock("00:00") == 0
    assert parse_clock("08:30") == 510
    assert parse_clock("24:00") == 1440

@pytest.mark.parametrize("text", ["24:01", "7", "08:60", "ab:cd", "-1:00"])
def test_parse_clock_invalid(text):
    with pytest.raises(ValueError):
        parse_clock(text)

def test_parse_time_range():
    assert parse_time_range("08:00-12:00") == (480, 720)
    with pytest.raises(ValueError):
        parse_time_range("12:00-12:00")
    with pytest.raises(ValueError):
        parse_time_range("08:00")

def test_format_clock():
    assert format_clock(510) == "08:30"
    assert format_clock(1440) == "24:00"

def test_to_millis_treats_naive_as_utc():
    aware = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert to_millis(aware) == 1704067200000
    assert to_millis(datetime(2024, 1, 1)) == to_millis(aware)


# --- Tests for settings ---

def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("API_KEYS", "key-a,,key-b")
    monkeypatch.setenv("DISPATCH_MAX_RETRIES", "5")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings["api_keys"] == ["key-a", "key-b"]
        assert settings["max_retries"] == 5
        assert settings["retention_days"] == 7
    finally:
        get_settings.cache_clear()
