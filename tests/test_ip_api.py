import json
import threading
import time
from datetime import datetime, timezone
from unittest import mock

import pytest
import requests

from armiarma.utils.ip_api import (
    ApiResponse,
    IpApiMsg,
    IpInfo,
    IpLocator,
    IpQueue,
    QueueEmptyError,
    QueueFullError,
    TooManyRequestsError,
    call_ip_api,
)


def _response(status_code, headers, body):
    return mock.MagicMock(status_code=status_code, headers=headers, content=body)


def _success_body(query):
    return json.dumps(
        {
            "status": "success",
            "country": "Examplia",
            "countryCode": "EX",
            "city": "Sampleton",
            "lat": 1.5,
            "lon": -2.5,
            "as": "AS0 Example",
            "mobile": False,
            "query": query,
        }
    ).encode()


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeDB:
    def __init__(self, records=(False, False), fail=False):
        self.records = records
        self.fail = fail
        self.persisted = []
        self._lock = threading.Lock()

    def persist_to_db(self, item):
        with self._lock:
            self.persisted.append(item)

    def read_ip_info(self, ip):
        raise KeyError(ip)

    def check_ip_records(self, ip):
        if self.fail:
            raise RuntimeError("db down")
        return self.records

    def get_expired_ip_info(self):
        return []


def _info(ip):
    return IpInfo(ip_api_msg=IpApiMsg(status="success", query=ip), expiration_time=datetime.now(timezone.utc))


# --- IpQueue ---------------------------------------------------------------


def test_queue_is_fifo():
    q = IpQueue(10)
    q.add_item("1.1.1.1")
    q.add_item("2.2.2.2")
    assert q.read_item() == "1.1.1.1"
    assert q.read_item() == "2.2.2.2"
    assert len(q) == 0


def test_queue_ignores_duplicates():
    q = IpQueue(10)
    q.add_item("1.1.1.1")
    q.add_item("1.1.1.1")
    assert len(q) == 1
    assert q.ip_exists("1.1.1.1") is True
    assert q.ip_exists("2.2.2.2") is False


def test_queue_full():
    q = IpQueue(1)
    q.add_item("1.1.1.1")
    with pytest.raises(QueueFullError):
        q.add_item("2.2.2.2")


def test_queue_empty():
    with pytest.raises(QueueEmptyError):
        IpQueue(1).read_item()


# --- call_ip_api -----------------------------------------------------------


def test_call_ip_api_success():
    resp = _response(200, {"X-Ttl": "60", "X-Rl": "44"}, _success_body("8.8.8.8"))
    with mock.patch("requests.get", return_value=resp) as get:
        result = call_ip_api("8.8.8.8")
    url = get.call_args.args[0]
    assert "8.8.8.8" in url
    assert "{__ip__}" not in url
    assert result.attempts_left == 44
    assert result.delay == 0.0
    msg = result.ip_info.ip_api_msg
    assert msg.country == "Examplia"
    assert msg.country_code == "EX"
    assert msg.as_ == "AS0 Example"
    assert msg.query == "8.8.8.8"
    assert result.ip_info.expiration_time > datetime.now(timezone.utc)


def test_call_ip_api_no_attempts_left_sets_delay():
    resp = _response(200, {"X-Ttl": "17", "X-Rl": "0"}, _success_body("8.8.4.4"))
    with mock.patch("requests.get", return_value=resp):
        result = call_ip_api("8.8.4.4")
    assert result.attempts_left == 0
    assert result.delay == 17.0


def test_call_ip_api_too_many_requests():
    resp = _response(429, {"X-Ttl": "30"}, b"")
    with mock.patch("requests.get", return_value=resp):
        with pytest.raises(TooManyRequestsError) as info:
            call_ip_api("8.8.8.8")
    assert info.value.delay == 30.0


def test_call_ip_api_failed_status():
    body = json.dumps({"status": "fail"}).encode()
    resp = _response(200, {"X-Ttl": "60", "X-Rl": "10"}, body)
    with mock.patch("requests.get", return_value=resp):
        with pytest.raises(ValueError):
            call_ip_api("10.0.0.1")


def test_call_ip_api_bad_json():
    resp = _response(200, {"X-Ttl": "60", "X-Rl": "10"}, b"not json")
    with mock.patch("requests.get", return_value=resp):
        with pytest.raises(ValueError):
            call_ip_api("1.2.3.4")


def test_call_ip_api_request_failure():
    with mock.patch("requests.get", side_effect=requests.ConnectionError("down")):
        with pytest.raises(ConnectionError):
            call_ip_api("1.2.3.4")


# --- IpLocator -------------------------------------------------------------


def test_locator_persists_located_ips():
    db = FakeDB()
    locator = IpLocator(db, lambda ip: ApiResponse(ip_info=_info(ip)), min_iter_time=0.01)
    locator.locate_ip("1.1.1.1")
    locator.locate_ip("2.2.2.2")
    assert locator.pending == 2
    locator.run()
    try:
        assert _wait_for(lambda: len(db.persisted) == 2)
    finally:
        locator.close()
    assert [info.ip_api_msg.query for info in db.persisted] == ["1.1.1.1", "2.2.2.2"]
    assert locator.api_calls == 2


def test_locator_skips_fresh_record():
    locator = IpLocator(FakeDB(records=(True, False)), min_iter_time=0.01)
    locator.locate_ip("1.1.1.1")
    assert locator.pending == 0


def test_locator_requeues_expired_record():
    locator = IpLocator(FakeDB(records=(True, True)), min_iter_time=0.01)
    locator.locate_ip("1.1.1.1")
    locator.locate_ip("1.1.1.1")
    assert locator.pending == 1


def test_locator_queues_when_db_check_fails():
    locator = IpLocator(FakeDB(fail=True), min_iter_time=0.01)
    locator.locate_ip("1.1.1.1")
    assert locator.pending == 1


def test_locator_does_not_persist_on_error():
    db = FakeDB()

    def failing(ip):
        raise ValueError("bad answer")

    locator = IpLocator(db, failing, min_iter_time=0.01)
    locator.locate_ip("1.1.1.1")
    locator.run()
    try:
        assert _wait_for(lambda: locator.api_calls == 1)
    finally:
        locator.close()
    assert db.persisted == []


def test_locate_ip_on_full_queue_returns_after_close():
    locator = IpLocator(FakeDB(), queue_size=1, min_iter_time=0.01)
    locator.locate_ip("1.1.1.1")
    locator.close()
    locator.locate_ip("2.2.2.2")
    assert locator.pending == 1