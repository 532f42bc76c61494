from datetime import datetime, timedelta, timezone

import pytest

from armiarma.utils.basic_ops import (
    bytes_from_string,
    exists_in_array,
    exists_in_map_value,
    parse_addr_array,
    parse_string_array,
    parse_time_array,
    return_greatest_time,
    return_max_int,
)


def test_greatest_time():
    base = datetime(2022, 1, 1, tzinfo=timezone.utc)
    times = [base, base + timedelta(hours=3), base - timedelta(days=1)]
    assert return_greatest_time(times) == times[1]


def test_greatest_time_empty():
    with pytest.raises(ValueError):
        return_greatest_time([])


def test_max_int():
    values = [3, 9, 2, -7]
    assert return_max_int(values) == values[1]
    with pytest.raises(ValueError):
        return_max_int([])


def test_parse_string_array():
    assert parse_string_array(None) == []
    assert parse_string_array(["a", "b"]) == ["a", "b"]
    with pytest.raises(TypeError):
        parse_string_array(["a", 1])


def test_parse_time_array_utc():
    parsed = parse_time_array(["2021-08-02T10:00:00Z"])
    assert parsed == [datetime(2021, 8, 2, 10, 0, 0, tzinfo=timezone.utc)]


@pytest.mark.parametrize(
    "moment",
    [
        datetime(2021, 8, 2, 10, 30, 15, tzinfo=timezone.utc),
        datetime(2020, 2, 29, 23, 59, 59, 123456, tzinfo=timezone.utc),
        datetime(2019, 5, 6, 1, 2, 3, tzinfo=timezone(timedelta(hours=-5, minutes=-30))),
    ],
)
def test_parse_time_round_trip(moment):
    assert parse_time_array([moment.isoformat()]) == [moment]


@pytest.mark.parametrize(
    "text", ["2021-08-02", "2021-13-02T10:00:00Z", "2021-08-02T10:00:00", "yesterday"]
)
def test_parse_time_invalid(text):
    with pytest.raises(ValueError):
        parse_time_array([text])


def test_parse_time_none():
    assert parse_time_array(None) == []


def test_parse_addr_array():
    texts = ["/ip4/1.2.3.4/tcp/9000", "/ip6/::1/udp/13000"]
    assert [str(a) for a in parse_addr_array(texts)] == texts
    assert parse_addr_array(None) == []
    with pytest.raises(ValueError):
        parse_addr_array(["not an address"])


def test_exists_in_array():
    assert exists_in_array(["Prysm", "Teku"], "prysm") is True
    assert exists_in_array(["Prysm", "Teku"], "nimbus") is False
    assert exists_in_array([], "x") is False


def test_exists_in_map_value():
    mapping = {"a": "Lighthouse", "b": "Lodestar"}
    assert exists_in_map_value(mapping, "LODESTAR") is True
    assert exists_in_map_value(mapping, "a") is False


def test_bytes_from_string_round_trip():
    text = "héllo wörld"
    data = bytes_from_string(text)
    assert isinstance(data, bytes)
    assert data.decode("utf-8") == text