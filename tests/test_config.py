import pytest

from attendance_integrity.config import Settings
from attendance_integrity.exceptions import ConfigurationError


def test_defaults_satisfy_poll_overlap_rule():
    s = Settings()
    assert s.poll_retrieval_min >= 2 * s.poll_interval_min
    assert 0 < s.poll_overlap_min < s.poll_retrieval_min


def test_retrieval_shorter_than_two_intervals_refuses_to_load():
    with pytest.raises(ConfigurationError):
        Settings(poll_interval_min=5, poll_retrieval_min=7)


def test_retrieval_exactly_two_intervals_is_accepted():
    s = Settings(poll_interval_min=5, poll_retrieval_min=10, poll_overlap_min=2)
    assert s.poll_retrieval_min == 10


def test_env_aliases_are_read(monkeypatch):
    monkeypatch.setenv("POLL_INTERVAL_MIN", "3")
    monkeypatch.setenv("POLL_RETRIEVAL_MIN", "9")
    monkeypatch.setenv("MIN_ATTENDANCE_RATE", "75")
    s = Settings()
    assert s.poll_interval_min == 3
    assert s.poll_retrieval_min == 9
    assert s.min_attendance_rate == 75.0


def test_unknown_cache_backend_rejected():
    with pytest.raises(ConfigurationError):
        Settings(cache_backend="redis")
