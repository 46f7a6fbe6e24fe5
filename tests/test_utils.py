import math

import pytest

from rigwatch.core.utils import format_difficulty, parse_difficulty, pick, split_host_port, to_float, to_int


@pytest.mark.parametrize("value, expected", [
    ("56.4M", 56_400_000),
    ("1.2T", 1_200_000_000_000),
    ("100", 100),
    ("3.31G", 3_310_000_000),
    ("3.31B", 3_310_000_000),
    ("12k", 12_000),
    (" 7.5 m ", 7_500_000),
    (1234, 1234),
    (56.5, 56.5),
])
def test_parse_difficulty(value, expected):
    assert parse_difficulty(value) == expected


@pytest.mark.parametrize("value", ["", "garbage", "M", "1.2X", None, True, [], {}, math.nan, math.inf])
def test_parse_difficulty_unparseable_is_zero(value):
    assert parse_difficulty(value) == 0


def test_format_difficulty():
    assert format_difficulty(56_400_000) == "56.40M"
    assert format_difficulty("1.2T") == "1.20T"
    assert format_difficulty(4096) == "4.10K"
    assert format_difficulty(512) == "512"
    assert format_difficulty(0) == "--"
    assert format_difficulty(None) == "--"


def test_to_float_and_to_int():
    assert to_float("12.5") == 12.5
    assert to_float("n/a", 1.0) == 1.0
    assert to_float(None) == 0.0
    assert to_float("inf") == 0.0
    assert to_int("42.9") == 42
    assert to_int(None, 7) == 7


def test_pick_skips_missing_and_empty_values():
    data = {"bestDiff": "", "best_diff": None, "bestDifficulty": "4.2G"}
    assert pick(data, ("bestDiff", "best_diff", "bestDifficulty")) == "4.2G"
    assert pick(data, ("nope",), "fallback") == "fallback"


@pytest.mark.parametrize("url, expected", [
    ("stratum+tcp://pool.example.com:3333", ("pool.example.com", 3333)),
    ("stratum+ssl://pool.example.com:4333/path", ("pool.example.com", 4333)),
    ("pool.example.com", ("pool.example.com", None)),
    ("10.0.0.5:4028", ("10.0.0.5", 4028)),
    ("", ("", None)),
    (None, ("", None)),
])
def test_split_host_port(url, expected):
    assert split_host_port(url) == expected


def test_split_host_port_default():
    assert split_host_port("10.0.0.5", 4028) == ("10.0.0.5", 4028)
